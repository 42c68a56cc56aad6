"""Session state machine.

SessionController is the single owner of a live SessionCurrentState. Every
mutation goes through one of its methods; nothing else writes the state.

Lifecycle:

    idle ──start()──▶ active ──start_combat()──▶ combat
                        ▲  ◀──end_combat()───────┘
                        │
                 archive() from active or combat ──▶ archived

Encounter checks run on start, on every location change and after every
action-count increment. A high-priority judgment that carries a dice check
arms the mandatory-dice gate: at most one PendingRequirement is live, later
judgments queue FIFO in pending_encounters, and only a roll with the exact
required notation resolves it. Voluntary rolls are never blocked by the gate.

The controller also owns the session's append-only message log. Every
mutating operation may add to it; nothing ever rewrites earlier entries.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Literal

from pydantic import BaseModel

from trpg_session.config import SessionConfig
from trpg_session.dice import batch_roll, describe_roll, roll, validate_against_requirement
from trpg_session.encounters import DetectionResult, Judge, detect_encounters
from trpg_session.models import (
    DiceRollResult,
    EncounterContext,
    EncounterInfo,
    EncounterRecord,
    GameTime,
    Location,
    PartyDelta,
    PartyStatus,
    PendingRequirement,
    SenderType,
    SessionCurrentState,
    SessionMessage,
    SessionSnapshot,
    SessionStatus,
    TimeOfDay,
    WorldRoster,
)
from trpg_session.narrative import (
    EventSeed,
    LLMError,
    NarrativeClient,
    NarrativeRequest,
    NarrativeResponse,
)
from trpg_session.storage import Storage
from trpg_session.tactics import (
    BehaviorProfile,
    Outcome,
    classify_behavior,
    consequences_for,
    resolve_outcome,
)

logger = logging.getLogger(__name__)

GM = "Game Master"
SYSTEM = "System"

TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    "idle": {"active"},
    "active": {"combat", "archived"},
    "combat": {"active", "archived"},
    "archived": set(),
}

ActionType = Literal[
    "move", "talk", "interact", "shop", "rest", "prayer",
    "attack", "defend", "skill", "custom",
]
NarrativeKind = Literal["narration", "event_seeds"]

# location feature → extra action offered there
FEATURE_ACTIONS: dict[str, ActionType] = {
    "shop": "shop",
    "inn": "rest",
    "temple": "prayer",
}


class SessionStateError(RuntimeError):
    """An operation was attempted from a state that does not allow it."""


class SessionAction(BaseModel):
    type: ActionType
    label: str = ""  # free text for custom actions


class ActionResult(BaseModel):
    ok: bool
    message: str


class GateResult(BaseModel):
    status: Literal["success", "mismatch", "no_requirement"]
    message: str
    attempts: int = 0
    outcome: Outcome | None = None
    record: EncounterRecord | None = None


def _clamp(value: int) -> int:
    return max(0, min(100, value))


class SessionController:
    """Owns one session: state, message log, encounter history and the dice gate."""

    def __init__(
        self,
        world: WorldRoster,
        *,
        config: SessionConfig | None = None,
        storage: Storage | None = None,
        narrative: NarrativeClient | None = None,
        rng: random.Random | None = None,
        judge: Judge | None = None,
    ) -> None:
        self._world = world
        self._config = config or SessionConfig()
        self._storage = storage
        self._narrative = narrative
        self._rng = rng
        self._judge = judge
        self._narration: asyncio.Task | None = None

        self.state = SessionCurrentState(max_actions_per_day=self._config.max_actions_per_day)
        self.messages: list[SessionMessage] = []
        self.encounter_history: list[EncounterRecord] = []
        self.pending: PendingRequirement | None = None
        self.pending_encounters: list[PendingRequirement] = []
        self.last_detection: DetectionResult | None = None

    @classmethod
    def restore(
        cls,
        snapshot: SessionSnapshot,
        world: WorldRoster,
        **kwargs,
    ) -> SessionController:
        """Rebuild a controller from a saved snapshot."""
        controller = cls(world, **kwargs)
        controller.state = snapshot.state
        controller.messages = list(snapshot.messages)
        controller.encounter_history = list(snapshot.encounter_history)
        controller.pending = snapshot.pending
        controller.pending_encounters = list(snapshot.pending_encounters)
        return controller

    @property
    def world(self) -> WorldRoster:
        return self._world

    # ------------------------------------------------------------------
    # State and log helpers
    # ------------------------------------------------------------------

    def _transition(self, target: SessionStatus) -> None:
        current = self.state.status
        if target not in TRANSITIONS[current]:
            raise SessionStateError(f"Cannot move session from {current!r} to {target!r}")
        logger.debug("session %s: %s -> %s", self.state.session_id, current, target)
        self.state.status = target

    def _require_live(self) -> None:
        if self.state.status not in ("active", "combat"):
            raise SessionStateError(f"Session is not running (status={self.state.status!r})")

    def _append(
        self,
        sender: str,
        sender_type: SenderType,
        text: str,
        action_type: str | None = None,
    ) -> SessionMessage:
        msg = SessionMessage(sender=sender, sender_type=sender_type, text=text, action_type=action_type)
        self.messages.append(msg)
        return msg

    def current_location(self) -> Location:
        location_id = self.state.current_location_id
        return self._world.location(location_id) or Location(id=location_id, name=location_id)

    def active_character_name(self) -> str | None:
        character_id = self.state.active_character_id
        character = next((c for c in self._world.characters if c.id == character_id), None)
        return character.name if character else None

    def build_context(self) -> EncounterContext:
        """Fresh encounter snapshot of the current state and world roster.

        Scheduled events that already have an encounter record are left out,
        so a resolved event never arms the gate again.
        """
        resolved = {r.event_id for r in self.encounter_history if r.event_id}
        return EncounterContext(
            location=self.current_location(),
            time=GameTime(day=self.state.current_day, time_of_day=self.state.current_time_of_day),
            player_characters=list(self._world.characters),
            npcs=list(self._world.npcs),
            enemies=list(self._world.enemies),
            events=[e for e in self._world.events if e.id not in resolved],
            weather=self.state.weather,
            party_status=self.state.party_status.model_copy(),
        )

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self.state.model_copy(deep=True),
            messages=list(self.messages),
            encounter_history=list(self.encounter_history),
            pending=self.pending,
            pending_encounters=list(self.pending_encounters),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, location_id: str, campaign_title: str = "") -> None:
        self._transition("active")
        self.state.current_location_id = location_id
        self.state.campaign_title = campaign_title
        location = self.current_location()
        title = campaign_title or "Untitled campaign"
        self._append(
            GM, "gm",
            f"The session for '{title}' begins at {location.name}. "
            f"Day {self.state.current_day}, {self.state.current_time_of_day}.",
        )
        logger.info("session %s started at %s", self.state.session_id, location_id)
        self.check_encounters()

    def select_character(self, character_id: str) -> None:
        self._require_live()
        character = next((c for c in self._world.characters if c.id == character_id), None)
        if character is None:
            raise ValueError(f"Unknown character: {character_id!r}")
        self.state.active_character_id = character_id
        self._append(SYSTEM, "system", f"{character.name} is now the active character.")

    def set_time_of_day(self, time_of_day: TimeOfDay) -> None:
        self._require_live()
        self.state.current_time_of_day = time_of_day

    # ------------------------------------------------------------------
    # Actions and time
    # ------------------------------------------------------------------

    def available_actions(self) -> list[ActionType]:
        actions: list[ActionType] = ["move", "talk", "interact"]
        features = self.current_location().features
        for feature, action in FEATURE_ACTIONS.items():
            if feature in features:
                actions.append(action)
        if self.state.combat_mode:
            actions += ["attack", "defend", "skill"]
        return actions

    def _describe_action(self, name: str, action: SessionAction, target: str | None) -> str:
        if action.type == "move":
            if target:
                return f"{name} moves to {self.current_location().name}."
            return f"{name} moves on."
        if action.type in ("talk", "interact", "attack"):
            npc = next((n for n in self._world.npcs if n.id == target), None)
            who = npc.name if npc else target
            verb = {"talk": "talks with", "interact": "interacts with", "attack": "attacks"}[action.type]
            if who:
                return f"{name} {verb} {who}."
            fallback = {"talk": "an NPC", "interact": "the other characters", "attack": "the enemy"}
            return f"{name} {verb} {fallback[action.type]}."
        if action.type == "shop":
            return f"{name} goes shopping."
        if action.type == "rest":
            return f"{name} rests at the inn."
        if action.type == "prayer":
            return f"{name} prays at the temple."
        if action.type == "defend":
            return f"{name} takes a defensive stance."
        if action.type == "skill":
            return f"{name} uses a skill."
        return f"{name} does: {action.label or 'something'}."

    def execute_action(self, action: SessionAction | ActionType, target: str | None = None) -> ActionResult:
        """Spend one of today's actions.

        Rejected without touching any state when no character is selected or
        today's cap is reached.
        """
        self._require_live()
        if isinstance(action, str):
            action = SessionAction(type=action)

        name = self.active_character_name()
        if name is None:
            return ActionResult(ok=False, message="No character is selected.")
        if self.state.action_count >= self.state.max_actions_per_day:
            return ActionResult(ok=False, message="Today's action limit has been reached.")

        if action.type == "move" and target:
            self.state.current_location_id = target
        text = self._describe_action(name, action, target)
        self._append(name, "player", text, action_type=action.type)
        self.state.action_count += 1
        logger.debug(
            "action %s (%d/%d)", action.type, self.state.action_count, self.state.max_actions_per_day,
        )
        self.check_encounters()
        return ActionResult(ok=True, message=text)

    def move_to(self, location_id: str) -> None:
        """Change location without spending an action."""
        self._require_live()
        self.state.current_location_id = location_id
        self._append(SYSTEM, "system", f"The party arrives at {self.current_location().name}.")
        self.check_encounters()

    def advance_day(self) -> None:
        self._require_live()
        self.state.current_day += 1
        self.state.action_count = 0
        self.state.current_time_of_day = "morning"
        day = self.state.current_day
        self._append(SYSTEM, "system", f"--- Day {day}, morning ---")

        for event in self._world.events:
            if event.day == day:
                self._append(GM, "gm", f"Event '{event.title}' begins: {event.description}")
        logger.info("session %s advanced to day %d", self.state.session_id, day)
        self.check_encounters()

    # ------------------------------------------------------------------
    # Combat and party
    # ------------------------------------------------------------------

    def start_combat(self, enemy_ids: list[str]) -> list[str]:
        """Enter combat and return the initiative order (highest first)."""
        self._transition("combat")
        roster = {e.id: e for e in self._world.enemies}
        enemies = [roster[i] for i in enemy_ids if i in roster]
        participants = list(self._world.characters) + enemies
        ordered = sorted(participants, key=lambda p: p.initiative, reverse=True)

        self.state.combat_mode = True
        self.state.initiative_order = [p.id for p in ordered]
        names = ", ".join(p.name for p in ordered)
        self._append(GM, "gm", f"Combat begins! Initiative order: {names}")
        logger.info("combat started with %d participants", len(ordered))
        return self.state.initiative_order

    def end_combat(self) -> None:
        self._transition("active")
        self.state.combat_mode = False
        self.state.initiative_order = []
        self._append(GM, "gm", "Combat has ended.")
        logger.info("combat ended")

    def update_party_status(self, delta: PartyDelta) -> PartyStatus:
        """Apply deltas clamped to [0, 100]; only changed dimensions are logged."""
        self._require_live()
        before = self.state.party_status
        after = PartyStatus(
            average_hp=_clamp(before.average_hp + delta.hp_modifier),
            resources=_clamp(before.resources + delta.resource_modifier),
            morale=_clamp(before.morale + delta.morale_modifier),
        )
        for label, old, new in (
            ("HP", before.average_hp, after.average_hp),
            ("Resources", before.resources, after.resources),
            ("Morale", before.morale, after.morale),
        ):
            if old != new:
                self._append(SYSTEM, "system", f"Party {label}: {old} -> {new}")
        self.state.party_status = after
        return after

    # ------------------------------------------------------------------
    # Encounters and the dice gate
    # ------------------------------------------------------------------

    def check_encounters(self) -> DetectionResult:
        result = detect_encounters(self.build_context(), self._judge, rng=self._rng)
        self.last_detection = result
        decision = result.immediate_action
        if decision is None:
            return result

        top = result.encounters[0]
        if getattr(decision, "check", None) is None:
            self._append(GM, "gm", decision.consequences.success)
        elif self._already_engaged(top):
            logger.debug("encounter at %s already in combat, not re-armed", top.location_id)
        else:
            self._arm(PendingRequirement(encounter=top, decision=decision))
        return result

    def _already_engaged(self, encounter: EncounterInfo) -> bool:
        if not self.state.combat_mode:
            return False
        enemy_ids = {e.id for e in self._world.enemies}
        engaged = [p for p in encounter.participants if p in enemy_ids]
        return bool(engaged) and all(p in self.state.initiative_order for p in engaged)

    def _arm(self, requirement: PendingRequirement) -> None:
        if self.pending is None:
            self.pending = requirement
            self._announce(requirement)
            return
        queued = [self.pending, *self.pending_encounters]
        if any(r.encounter.same_as(requirement.encounter) for r in queued):
            logger.debug("duplicate %s encounter skipped", requirement.encounter.category)
            return
        self.pending_encounters.append(requirement)
        logger.debug("encounter queued behind the active dice check (%d waiting)", len(self.pending_encounters))

    def _announce(self, requirement: PendingRequirement) -> None:
        spec = requirement.specification
        sign = "+" if spec.modifier >= 0 else "-"
        self._append(
            GM, "gm",
            f"Dice check required: {spec.reason}. Roll {spec.notation} "
            f"({sign}{abs(spec.modifier)}) against DC {spec.difficulty}.",
        )

    def submit_mandated_roll(self, result: DiceRollResult) -> GateResult:
        """Resolve the pending dice check with a roll of the required notation."""
        self._require_live()
        requirement = self.pending
        if requirement is None:
            return GateResult(status="no_requirement", message="No dice check is pending.")

        spec = requirement.specification
        if validate_against_requirement(result, spec) == "mismatch":
            requirement.attempts += 1
            message = (
                f"{spec.reason} needs {spec.notation}, not {result.notation}. "
                f"Roll again (attempt {requirement.attempts})."
            )
            self._append(SYSTEM, "system", message)
            return GateResult(status="mismatch", message=message, attempts=requirement.attempts)

        decision = requirement.decision
        encounter = requirement.encounter
        dc = spec.difficulty if spec.difficulty is not None else 10
        natural = result.rolls[0] if result.rolls else None
        outcome = resolve_outcome(result.total, dc, decision, natural=natural)
        effects = consequences_for(decision, outcome.tier)

        self._append(self.active_character_name() or SYSTEM, "player", describe_roll(result))
        self._append(GM, "gm", outcome.description)
        self.update_party_status(effects.party_delta)

        record = EncounterRecord(
            day=self.state.current_day,
            time_of_day=self.state.current_time_of_day,
            location_id=encounter.location_id,
            category=encounter.category,
            participants=list(encounter.participants),
            action=decision.action,
            outcome=outcome.tier,
            description=outcome.description,
            difficulty=dc,
            roll_total=result.total,
            surprise=decision.action == "ambush",
            event_id=encounter.event_id,
        )
        self.encounter_history.append(record)
        self.pending = None
        logger.info("encounter %s resolved as %s (roll %d vs DC %d)", decision.action, outcome.tier, result.total, dc)

        if effects.enters_combat and self.state.status == "active":
            enemy_ids = {e.id for e in self._world.enemies}
            self.start_combat([p for p in encounter.participants if p in enemy_ids])

        if self.pending_encounters:
            self.pending = self.pending_encounters.pop(0)
            self._announce(self.pending)

        return GateResult(
            status="success",
            message=outcome.description,
            attempts=requirement.attempts,
            outcome=outcome,
            record=record,
        )

    def roll_for_requirement(self, notation: str | None = None) -> GateResult:
        """Roll `notation` (the required one by default) and submit it to the gate."""
        self._require_live()
        if self.pending is None:
            return GateResult(status="no_requirement", message="No dice check is pending.")
        spec = self.pending.specification
        result = roll(notation or spec.notation, spec.reason, modifier=spec.modifier, rng=self._rng)
        return self.submit_mandated_roll(result)

    def roll_dice(self, notation: str, purpose: str = "") -> DiceRollResult:
        """Voluntary roll under the configured game system. Never blocked by a pending dice check."""
        self._require_live()
        sender = self.active_character_name()
        sender_type: SenderType = "player" if sender else "system"
        return roll(
            notation,
            purpose,
            rng=self._rng,
            log=lambda line: self._append(sender or SYSTEM, sender_type, line),
            system=self._config.game_system,
        )

    def roll_batch(self, notations: list[str], purpose: str = "") -> list[DiceRollResult]:
        """Several voluntary rolls at once.

        Raises DiceNotationError, with nothing rolled or logged, if any
        notation is illegal in the configured game system.
        """
        self._require_live()
        results = batch_roll(notations, system=self._config.game_system, rng=self._rng)
        sender = self.active_character_name()
        for result in results:
            line = describe_roll(result)
            self._append(
                sender or SYSTEM,
                "player" if sender else "system",
                f"{purpose}: {line}" if purpose else line,
            )
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> bool:
        """Persist the session. On failure the in-memory state is left as is."""
        if self._storage is None:
            logger.error("session %s has no storage configured", self.state.session_id)
            return False
        try:
            self._storage.save_session(self.snapshot())
        except OSError:
            logger.exception("failed to save session %s", self.state.session_id)
            return False
        return True

    def archive(self) -> bool:
        """Save the session as archived. Returns False (still live) if saving fails."""
        if "archived" not in TRANSITIONS[self.state.status]:
            raise SessionStateError(f"Cannot archive a session in state {self.state.status!r}")
        if self._storage is None:
            logger.error("session %s has no storage configured", self.state.session_id)
            return False

        archived = self.state.model_copy(
            update={"status": "archived", "combat_mode": False, "initiative_order": []},
        )
        snapshot = self.snapshot()
        snapshot.state = archived
        try:
            self._storage.save_session(snapshot)
        except OSError:
            logger.exception("failed to archive session %s", self.state.session_id)
            return False

        self.state = archived
        self._append(SYSTEM, "system", "The session has been archived.")
        logger.info("session %s archived", self.state.session_id)
        return True

    # ------------------------------------------------------------------
    # Narrative
    # ------------------------------------------------------------------

    def enemy_behaviors(self) -> dict[str, BehaviorProfile]:
        """Tactic profile for every enemy at (or patrolling) the current location."""
        context = self.build_context()
        location_id = context.location.id
        return {
            enemy.name: classify_behavior(enemy, context)
            for enemy in context.enemies
            if enemy.location_id == location_id or location_id in enemy.patrol_locations
        }

    def _narrative_context(self) -> dict[str, object]:
        location = self.current_location()
        context: dict[str, object] = {
            "campaign": self.state.campaign_title,
            "location": location.name,
            "day": self.state.current_day,
            "time_of_day": self.state.current_time_of_day,
            "combat": self.state.combat_mode,
            "party_hp": self.state.party_status.average_hp,
            "party_morale": self.state.party_status.morale,
        }
        behaviors = self.enemy_behaviors()
        if behaviors:
            context["enemy_behavior"] = "; ".join(
                f"{name} is {profile.type} ({', '.join(profile.preferred_tactics)})"
                for name, profile in behaviors.items()
            )
        return context

    async def narrate(
        self,
        prompt: str,
        kind: NarrativeKind = "narration",
    ) -> NarrativeResponse | list[EventSeed]:
        """Ask the narrative backend for text (or event seeds) and log the result.

        The request runs as a task that cancel_narration() can cancel; the
        cancellation reaches the awaiting caller as asyncio.CancelledError.
        """
        self._require_live()
        if self._narrative is None:
            raise LLMError("No narrative backend is configured")
        if self._narration is not None:
            raise SessionStateError("A narration request is already in flight")

        request = NarrativeRequest(
            prompt=prompt,
            context=self._narrative_context(),
            history=[m.text for m in self.messages[-20:]],
        )
        if kind == "event_seeds":
            self._narration = asyncio.ensure_future(self._narrative.propose_event_seeds(request))
        else:
            self._narration = asyncio.ensure_future(self._narrative.generate(request))

        try:
            result = await self._narration
        finally:
            self._narration = None

        if isinstance(result, NarrativeResponse):
            self._append(GM, "gm", result.text)
        elif result:
            titles = ", ".join(seed.title for seed in result)
            self._append(GM, "gm", f"Upcoming events proposed: {titles}")
        return result

    def cancel_narration(self) -> bool:
        """Cancel the in-flight narration. False when nothing is running."""
        task = self._narration
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("narration cancelled for session %s", self.state.session_id)
        return True
