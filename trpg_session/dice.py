"""Dice notation parsing, rolling and mandated-roll validation.

Notation grammar: [count]d<sides>[+|-modifier][adv|dis], e.g. "d20", "1d20+3",
"2d6-1", "1d20adv". The adv/dis suffix draws the die twice and keeps the
higher or lower result; it only applies to a single die. Counts are capped at
MAX_DICE and sides at MAX_SIDES.

parse_notation() is lenient: text that does not match the grammar falls back
to a plain 1d20 (a warning is logged). Callers that need to reject bad input
use parse_notation_strict(), which raises DiceNotationError instead.

How a roll is scored depends on the game system (GAME_SYSTEMS):

  sum         d20 systems; dice plus modifier, meet or beat the target
  percentile  d100 systems; raw roll, roll under the target
  successes   dice pools; count of dice at or above the success threshold,
              sixes explode

Every roll accepts an optional random.Random so tests and replays can be
deterministic; by default the module-level generator is used.
"""

from __future__ import annotations

import logging
import random
import re
from typing import Callable, Literal, NamedTuple

from pydantic import BaseModel

from trpg_session.models import DiceRollResult, DiceSpecification

logger = logging.getLogger(__name__)

_NOTATION_RE = re.compile(r"^(\d{0,6})d(\d{1,6})([+-]\d{1,6})?(adv|dis)?$", re.IGNORECASE)

MAX_DICE = 100
MAX_SIDES = 1000

RollMode = Literal["normal", "advantage", "disadvantage"]
Validation = Literal["success", "mismatch"]
GameSystem = Literal["dnd5e", "pathfinder", "stormbringer", "cthulhu", "shadowrun"]

_SUFFIX_MODES: dict[str, RollMode] = {"adv": "advantage", "dis": "disadvantage"}
_MODE_SUFFIXES = {mode: suffix for suffix, mode in _SUFFIX_MODES.items()}


class DiceNotation(NamedTuple):
    count: int
    sides: int
    modifier: int
    mode: RollMode = "normal"


FALLBACK = DiceNotation(count=1, sides=20, modifier=0)


class DiceNotationError(ValueError):
    """Raised by parse_notation_strict() for text outside the dice grammar."""


# ---------------------------------------------------------------------------
# Game systems
# ---------------------------------------------------------------------------

class GameSystemRules(BaseModel):
    id: GameSystem
    name: str
    die: int  # the die the critical and fumble ranges are read from
    scoring: Literal["sum", "percentile", "successes"] = "sum"
    advantage: bool = False
    exploding: bool = False
    required_sides: int | None = None
    success_threshold: int = 5
    critical_range: list[int]
    fumble_range: list[int]
    default_notation: str


GAME_SYSTEMS: dict[str, GameSystemRules] = {
    "dnd5e": GameSystemRules(
        id="dnd5e", name="D&D 5th Edition", die=20, advantage=True,
        critical_range=[20], fumble_range=[1], default_notation="1d20",
    ),
    "pathfinder": GameSystemRules(
        id="pathfinder", name="Pathfinder", die=20,
        critical_range=[20], fumble_range=[1], default_notation="1d20",
    ),
    "stormbringer": GameSystemRules(
        id="stormbringer", name="Stormbringer/Elric!", die=100, scoring="percentile",
        critical_range=[1, 2, 3, 4, 5], fumble_range=[96, 97, 98, 99, 100],
        default_notation="1d100",
    ),
    "cthulhu": GameSystemRules(
        id="cthulhu", name="Call of Cthulhu", die=100, scoring="percentile",
        critical_range=[1], fumble_range=[100], default_notation="1d100",
    ),
    "shadowrun": GameSystemRules(
        id="shadowrun", name="Shadowrun", die=6, scoring="successes", exploding=True,
        required_sides=6, critical_range=[6], fumble_range=[1], default_notation="6d6",
    ),
}


def game_system(system_id: str) -> GameSystemRules:
    try:
        return GAME_SYSTEMS[system_id]
    except KeyError:
        raise ValueError(f"Unknown game system: {system_id!r}") from None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _match(text: str) -> DiceNotation | None:
    m = _NOTATION_RE.match(text.strip())
    if not m:
        return None
    count = int(m.group(1)) if m.group(1) else 1
    modifier = int(m.group(3)) if m.group(3) else 0
    mode = _SUFFIX_MODES[m.group(4).lower()] if m.group(4) else "normal"
    return DiceNotation(count=count, sides=int(m.group(2)), modifier=modifier, mode=mode)


def _problem(parsed: DiceNotation) -> str | None:
    if parsed.count < 1 or parsed.sides < 1:
        return "needs at least one die with one side"
    if parsed.count > MAX_DICE:
        return f"rolls more than {MAX_DICE} dice"
    if parsed.sides > MAX_SIDES:
        return f"uses dice with more than {MAX_SIDES} sides"
    if parsed.mode != "normal" and parsed.count != 1:
        return "takes advantage or disadvantage on more than one die"
    return None


def parse_notation(text: str) -> DiceNotation:
    """Parse dice notation, falling back to 1d20 when the text is malformed."""
    parsed = _match(text)
    if parsed is None or _problem(parsed) is not None:
        logger.warning("Malformed dice notation %r, falling back to 1d20", text)
        return FALLBACK
    return parsed


def parse_notation_strict(text: str, system: str | None = None) -> DiceNotation:
    """Parse dice notation or raise DiceNotationError.

    With `system`, the notation must also be legal in that game system.
    """
    parsed = _match(text)
    if parsed is None:
        raise DiceNotationError(f"Invalid dice notation: {text!r}")
    problem = _problem(parsed)
    if problem:
        raise DiceNotationError(f"Dice notation {text!r} {problem}")
    if system is not None:
        rules = game_system(system)
        if parsed.mode != "normal" and not rules.advantage:
            raise DiceNotationError(f"{rules.name} has no advantage or disadvantage: {text!r}")
        if rules.required_sides and parsed.sides != rules.required_sides:
            raise DiceNotationError(f"{rules.name} rolls d{rules.required_sides} pools only: {text!r}")
    return parsed


def format_notation(count: int, sides: int, modifier: int = 0, mode: RollMode = "normal") -> str:
    """Canonical notation text: 1d20, 1d20+3, 2d6-1, 1d20adv."""
    base = f"{count}d{sides}"
    if modifier > 0:
        base = f"{base}+{modifier}"
    elif modifier < 0:
        base = f"{base}{modifier}"
    return base + _MODE_SUFFIXES.get(mode, "")


def describe_roll(result: DiceRollResult) -> str:
    rolls = ", ".join(str(r) for r in result.rolls)
    if GAME_SYSTEMS.get(result.game_system, GAME_SYSTEMS["dnd5e"]).scoring == "successes":
        line = f"{result.notation} = [{rolls}] = {result.total} successes"
    else:
        sign = "+" if result.modifier >= 0 else "-"
        line = f"{result.notation} = [{rolls}] {sign} {abs(result.modifier)} = {result.total}"
    return f"{result.purpose}: {line}" if result.purpose else line


# ---------------------------------------------------------------------------
# Rolling
# ---------------------------------------------------------------------------

def _roll_pool(gen, dice: DiceNotation, exploding: bool) -> list[int]:
    rolls: list[int] = []
    extra = 0
    for _ in range(dice.count):
        face = gen.randint(1, dice.sides)
        rolls.append(face)
        while exploding and dice.sides > 1 and face == dice.sides and extra < MAX_DICE:
            face = gen.randint(1, dice.sides)
            rolls.append(face)
            extra += 1
    return rolls


def roll(
    notation: str,
    purpose: str = "",
    *,
    modifier: int = 0,
    rng: random.Random | None = None,
    log: Callable[[str], None] | None = None,
    system: str = "dnd5e",
) -> DiceRollResult:
    """Roll `notation` under a game system's rules and return the result.

    `modifier` is added on top of any modifier written in the notation; dice
    pools and percentile systems ignore modifiers. With advantage or
    disadvantage the kept die is listed first in `rolls` and is the only one
    counted. When both `purpose` and `log` are given, a formatted line is
    passed to `log`.
    """
    rules = game_system(system)
    gen = rng or random
    dice = parse_notation(notation)

    if dice.mode != "normal" and rules.advantage:
        first, second = gen.randint(1, dice.sides), gen.randint(1, dice.sides)
        keep = max(first, second) if dice.mode == "advantage" else min(first, second)
        other = second if keep == first else first
        rolls, counted = [keep, other], [keep]
    else:
        if dice.mode != "normal":
            logger.warning("%s has no advantage or disadvantage, rolling %r normally", rules.name, notation)
        rolls = _roll_pool(gen, dice, rules.exploding)
        counted = rolls

    success: bool | None = None
    if rules.scoring == "sum":
        applied = dice.modifier + modifier
        total = sum(counted) + applied
    else:
        applied = 0
        if dice.modifier or modifier:
            logger.debug("%s ignores the modifier on %r", rules.name, notation)
        if rules.scoring == "successes":
            total = sum(1 for face in counted if face >= rules.success_threshold)
            success = total > 0
        else:
            total = sum(counted)

    graded = dice.sides == rules.die
    result = DiceRollResult(
        notation=notation,
        rolls=rolls,
        total=total,
        purpose=purpose,
        modifier=applied,
        critical=graded and any(face in rules.critical_range for face in counted),
        fumble=graded and any(face in rules.fumble_range for face in counted),
        game_system=rules.id,
        success=success,
    )
    logger.debug("roll %s (%s) purpose=%r rolls=%s total=%d", notation, rules.id, purpose, rolls, total)
    if purpose and log is not None:
        log(describe_roll(result))
    return result


def roll_d20(
    mode: RollMode = "normal",
    modifier: int = 0,
    purpose: str = "",
    *,
    rng: random.Random | None = None,
) -> DiceRollResult:
    """Roll a single d20, optionally with advantage or disadvantage."""
    return roll(format_notation(1, 20, mode=mode), purpose, modifier=modifier, rng=rng)


def batch_roll(
    notations: list[str],
    *,
    system: str = "dnd5e",
    rng: random.Random | None = None,
) -> list[DiceRollResult]:
    """Roll several notations at once. Any notation illegal in `system` raises before anything is rolled."""
    for text in notations:
        parse_notation_strict(text, system)
    return [roll(text, rng=rng, system=system) for text in notations]


def roll_specification(
    spec: DiceSpecification,
    *,
    rng: random.Random | None = None,
    log: Callable[[str], None] | None = None,
) -> DiceRollResult:
    """Roll exactly what a specification asks for, with its modifier applied."""
    return roll(spec.notation, spec.reason, modifier=spec.modifier, rng=rng, log=log)


def validate_against_requirement(result: DiceRollResult, specification: DiceSpecification) -> Validation:
    """A mandated roll is valid only if the exact notation that was asked for was rolled."""
    if result.notation != specification.notation:
        return "mismatch"
    return "success"


def meets_target(result: DiceRollResult, difficulty: int | None) -> bool | None:
    """Percentile systems roll under the target; everything else meets or beats it."""
    if difficulty is None:
        return None
    if GAME_SYSTEMS.get(result.game_system, GAME_SYSTEMS["dnd5e"]).scoring == "percentile":
        return result.total <= difficulty
    return result.total >= difficulty
