"""Tactical decision engine.

Turns an encounter snapshot into a judgment the table can resolve:

  analyze()                  → which kind of response the situation calls for
  select_check()             → which d20 check that response needs, and its base DC
  compute_difficulty_class() → the DC adjusted for enemy wits and party condition
  resolve_outcome()          → the tier a rolled total lands in, with its narration
  consequences_for()         → what that tier does to the party (deltas, combat)

Decisions are a tagged union (see models.TacticalDecision): ambush, trap,
combat and escape always carry the check to roll; dialogue and negotiate never
do.

classify_behavior() picks a tactic profile for an enemy. It only colours
narration and never feeds into the dice math.
"""

from __future__ import annotations

import logging
import math
import random
from typing import Literal

from pydantic import BaseModel, Field

from trpg_session.dice import format_notation
from trpg_session.models import (
    AmbushDecision,
    CombatDecision,
    Consequences,
    DialogueDecision,
    DiceSpecification,
    Enemy,
    EncounterContext,
    EncounterInfo,
    EscapeDecision,
    NegotiateDecision,
    OutcomeTier,
    PartyDelta,
    PlayerCharacter,
    TacticalDecision,
    TrapDecision,
)

logger = logging.getLogger(__name__)

DC_MIN = 5
DC_MAX = 30

ADVERSE_WEATHER = {"rain", "storm"}
STEALTHY_LOCATION_TYPES = ("forest", "ruins", "cave", "dungeon")

# feature → environmental advantage adjustment
FEATURE_ADVANTAGE: dict[str, float] = {
    "defensive_position": 0.5,
    "narrow_passage": 0.3,
    "open_field": -0.2,
}

CONSEQUENCES: dict[str, Consequences] = {
    "ambush": Consequences(
        success="You spot the ambush and avoid the surprise attack!",
        failure="The enemy ambush lands; you lose the first round!",
    ),
    "trap": Consequences(
        success="You dodge the trap just in time!",
        failure="The trap springs and you take damage!",
    ),
    "combat": Consequences(
        success="You act quickly and seize the better position!",
        failure="The enemy strikes first and pushes you onto the defensive!",
    ),
    "escape": Consequences(
        success="You break away and escape safely!",
        failure="The escape fails; you are forced to fight at a disadvantage!",
    ),
    "dialogue": Consequences(
        success="A conversation with the NPC begins.",
        failure="The NPC grows wary.",
    ),
    "negotiate": Consequences(
        success="You continue exploring.",
        failure="Nothing happens.",
    ),
}

CRITICAL_SUCCESS_TEXT: dict[str, str] = {
    "ambush": "You see through the ambush completely and get the chance to strike first!",
    "trap": "You evade the trap flawlessly and can turn it against your enemies!",
    "combat": "Perfect timing: your opening move gives you a decisive edge!",
    "escape": "You shake off pursuit entirely and reach safety!",
}
CRITICAL_FAILURE_TEXT: dict[str, str] = {
    "ambush": "Caught completely off guard, the party is thrown into confusion for two rounds!",
    "trap": "The trap catches you fully: heavy damage, and you cannot move!",
    "combat": "A fatal misjudgement opens the fight on terrible terms!",
    "escape": "The escape collapses and the enemy surrounds you!",
}
GENERIC_CRITICAL_SUCCESS = "A success beyond all expectations!"
GENERIC_CRITICAL_FAILURE = "The worst possible outcome!"

# tier → party deltas applied by the session after a mandated roll resolves
TIER_DELTAS: dict[str, PartyDelta] = {
    "critical_success": PartyDelta(morale_modifier=10),
    "success": PartyDelta(morale_modifier=5),
    "failure": PartyDelta(hp_modifier=-10, morale_modifier=-5),
    "critical_failure": PartyDelta(hp_modifier=-20, morale_modifier=-10),
}


class Outcome(BaseModel):
    tier: OutcomeTier
    description: str


class OutcomeEffects(BaseModel):
    party_delta: PartyDelta
    enters_combat: bool


class BehaviorProfile(BaseModel):
    type: Literal["aggressive", "defensive", "cunning", "territorial", "predatory"]
    preferred_tactics: list[str]
    flee_threshold: float  # HP ratio below which the enemy breaks off
    group_tactics: bool
    special_abilities: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Power and environment
# ---------------------------------------------------------------------------

def ability_modifier(score: int) -> int:
    return math.floor((score - 10) / 2)


def enemy_power(enemies: list[Enemy]) -> int:
    return sum(e.challenge_rating * 10 + e.hp + e.attack * 5 for e in enemies)


def party_power(party: list[PlayerCharacter]) -> int:
    total = 0
    for c in party:
        main_stat = max(c.stats.strength, c.stats.dexterity, c.stats.intelligence)
        total += c.level * 15 + c.hp + 3 * main_stat
    return total


def environmental_advantage(context: EncounterContext) -> float:
    advantage = 0.0
    if context.time.time_of_day == "night":
        advantage -= 0.2
    if context.weather and context.weather.lower() in ADVERSE_WEATHER:
        advantage -= 0.3
    for feature, adjustment in FEATURE_ADVANTAGE.items():
        if feature in context.location.features:
            advantage += adjustment
    return advantage


def _average_modifier(party: list[PlayerCharacter], stat: str) -> int:
    if not party:
        return 0
    mods = [ability_modifier(getattr(c.stats, stat)) for c in party]
    return math.floor(sum(mods) / len(mods))


def _best_modifier(party: list[PlayerCharacter], stat: str) -> int:
    if not party:
        return 0
    return max(ability_modifier(getattr(c.stats, stat)) for c in party)


# ---------------------------------------------------------------------------
# Decision policy
# ---------------------------------------------------------------------------

def analyze(context: EncounterContext, *, rng: random.Random | None = None) -> TacticalDecision:
    """Pick the response an encounter calls for."""
    if not context.enemies:
        if context.npcs:
            return DialogueDecision(priority="medium", consequences=CONSEQUENCES["dialogue"])
        return NegotiateDecision(priority="low", consequences=CONSEQUENCES["negotiate"])

    enemies_total = enemy_power(context.enemies)
    party_total = party_power(context.player_characters)
    ratio = enemies_total / party_total if party_total else math.inf
    advantage = environmental_advantage(context)
    logger.debug(
        "analyze enemy_power=%d party_power=%d ratio=%.2f advantage=%.2f",
        enemies_total, party_total, ratio, advantage,
    )

    if ratio > 2.0 and advantage < 0:
        return _checked("escape", context, rng=rng)
    if ratio > 1.5 or advantage > 0.5:
        return _checked("ambush", context, rng=rng)
    if "traps" in context.location.features:
        return _checked("trap", context, rng=rng)
    return _checked("combat", context, rng=rng)


_CHECKED_PRIORITY = {"ambush": "critical", "escape": "critical", "trap": "high", "combat": "high"}
_CHECKED_TYPES = {
    "ambush": AmbushDecision,
    "trap": TrapDecision,
    "combat": CombatDecision,
    "escape": EscapeDecision,
}


def _checked(action: str, context: EncounterContext, *, rng: random.Random | None = None) -> TacticalDecision:
    check = select_check(context, action, rng=rng)
    dc = compute_difficulty_class(check.difficulty or 10, context)
    return _CHECKED_TYPES[action](
        priority=_CHECKED_PRIORITY[action],
        consequences=CONSEQUENCES[action],
        check=check.model_copy(update={"difficulty": dc}),
    )


def select_check(
    context: EncounterContext,
    action: str,
    *,
    rng: random.Random | None = None,
) -> DiceSpecification:
    """The d20 check an action calls for, with its base (unadjusted) DC."""
    party = context.player_characters
    notation = format_notation(1, 20)

    if action == "ambush":
        return DiceSpecification(
            notation=notation,
            modifier=_average_modifier(party, "wisdom"),
            difficulty=15 + len(context.enemies) // 2,
            skill_name="perception",
            reason="Notice the ambush before it is sprung",
        )
    if action == "trap":
        return DiceSpecification(
            notation=notation,
            modifier=_average_modifier(party, "dexterity"),
            difficulty=12 + (rng or random).randint(0, 3),
            skill_name="reflex",
            reason="Dodge the trap",
        )
    if action == "negotiate":
        enemy_int = context.enemies[0].stats.intelligence if context.enemies else 10
        return DiceSpecification(
            notation=notation,
            modifier=_best_modifier(party, "charisma"),
            difficulty=10 + enemy_int,
            skill_name="charisma",
            reason="Attempt to negotiate with the enemy",
        )
    return DiceSpecification(
        notation=notation,
        modifier=_average_modifier(party, "dexterity"),
        difficulty=10,
        skill_name="initiative",
        reason="Initiative: who acts first",
    )


def compute_difficulty_class(
    base: int,
    context: EncounterContext,
    modifiers: dict[str, int] | None = None,
) -> int:
    """Adjust a base DC for environment, enemy intelligence and party condition."""
    dc = base
    modifiers = modifiers or {}
    if modifiers.get("environment"):
        dc += modifiers["environment"]

    if context.enemies:
        avg_int = sum(e.stats.intelligence for e in context.enemies) / len(context.enemies)
        dc += math.floor((avg_int - 10) / 2)

    if context.party_status.average_hp < 50:
        dc += 2
    if context.party_status.morale < 30:
        dc += 1

    return max(DC_MIN, min(DC_MAX, dc))


def resolve_outcome(
    roll_total: int,
    dc: int,
    decision: TacticalDecision,
    natural: int | None = None,
) -> Outcome:
    """Map a rolled total against its DC to an outcome tier.

    `natural` is the face of the primary die; when omitted the total itself
    is checked for the natural 20 / natural 1 cases.
    """
    face = roll_total if natural is None else natural
    margin = roll_total - dc

    if face == 20 or margin >= 10:
        text = CRITICAL_SUCCESS_TEXT.get(decision.action, GENERIC_CRITICAL_SUCCESS)
        return Outcome(tier="critical_success", description=text)
    if margin >= 0:
        return Outcome(tier="success", description=decision.consequences.success)
    if face == 1 or margin <= -10:
        text = CRITICAL_FAILURE_TEXT.get(decision.action, GENERIC_CRITICAL_FAILURE)
        return Outcome(tier="critical_failure", description=text)
    return Outcome(tier="failure", description=decision.consequences.failure)


def consequences_for(decision: TacticalDecision, tier: OutcomeTier) -> OutcomeEffects:
    if decision.action in ("ambush", "combat"):
        enters_combat = True
    elif decision.action == "escape":
        enters_combat = tier in ("failure", "critical_failure")
    else:
        enters_combat = False
    return OutcomeEffects(party_delta=TIER_DELTAS[tier], enters_combat=enters_combat)


# ---------------------------------------------------------------------------
# Encounter judgment
# ---------------------------------------------------------------------------

def requires_surprise(encounter: EncounterInfo, context: EncounterContext) -> bool:
    """Night, a stealthy foe, or concealing terrain all call for a surprise check."""
    if context.time.time_of_day == "night":
        return True
    participants = set(encounter.participants)
    for enemy in context.enemies:
        if enemy.id in participants and ({"ambush", "stealth"} & set(enemy.tactics)):
            return True
    location_type = context.location.type.lower()
    return any(t in location_type for t in STEALTHY_LOCATION_TYPES)


def judge_encounter(
    encounter: EncounterInfo,
    context: EncounterContext,
    *,
    rng: random.Random | None = None,
) -> TacticalDecision:
    """Produce the immediate judgment for one detected encounter."""
    participants = set(encounter.participants)
    enemies = [e for e in context.enemies if e.id in participants]
    npcs = [n for n in context.npcs if n.id in participants]
    narrowed = context.model_copy(update={"enemies": enemies, "npcs": npcs})

    if encounter.category == "trap":
        return _checked("trap", narrowed, rng=rng)
    if encounter.category == "combat" and not enemies:
        decision = _checked("combat", narrowed, rng=rng)
    else:
        decision = analyze(narrowed, rng=rng)

    if decision.action == "combat" and requires_surprise(encounter, narrowed):
        logger.debug("surprise conditions met at %s, combat becomes ambush", encounter.location_id)
        return _checked("ambush", narrowed, rng=rng)
    return decision


def classify_behavior(enemy: Enemy, context: EncounterContext) -> BehaviorProfile:
    enemy_type = enemy.type.lower()
    hp_ratio = enemy.hp / enemy.max_hp if enemy.max_hp else 1.0

    if enemy_type in ("undead", "construct"):
        return BehaviorProfile(
            type="aggressive",
            preferred_tactics=["charge", "overwhelm", "relentless_assault"],
            flee_threshold=0.0,  # never flees
            group_tactics=False,
            special_abilities=enemy.abilities,
        )
    if enemy.stats.intelligence >= 14:
        return BehaviorProfile(
            type="cunning",
            preferred_tactics=["ambush", "hit_and_run", "use_environment", "target_weakness"],
            flee_threshold=0.3,
            group_tactics=True,
            special_abilities=enemy.abilities,
        )
    if enemy_type == "predator":
        return BehaviorProfile(
            type="predatory",
            preferred_tactics=["stalk", "pounce", "isolate_weakest"],
            flee_threshold=0.25,
            group_tactics=len(context.enemies) > 1,
            special_abilities=enemy.abilities,
        )
    if enemy_type in ("beast", "animal"):
        return BehaviorProfile(
            type="territorial" if hp_ratio > 0.5 else "defensive",
            preferred_tactics=["protect_territory", "pack_tactics", "flee_when_wounded"],
            flee_threshold=0.4,
            group_tactics="pack" in enemy.name.lower(),
            special_abilities=enemy.abilities,
        )
    return BehaviorProfile(
        type="aggressive",
        preferred_tactics=["frontal_assault", "focus_fire", "use_abilities"],
        flee_threshold=0.2,
        group_tactics=len(context.enemies) > 1,
        special_abilities=enemy.abilities,
    )
