"""Core domain models.

All session components operate on these types. Pydantic is used for
validation and serialisation at every data boundary: the world roster loaded
from disk, the encounter snapshot handed to detection, the decisions handed
back by the tactical engine, and the session snapshot written on save.

World data (characters, NPCs, enemies, locations, scheduled events) is owned by
the persistence layer and only read here. The one mutable structure is
SessionCurrentState, owned by a single SessionController.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

TimeOfDay = Literal["morning", "afternoon", "evening", "night"]
Priority = Literal["high", "medium", "low"]
DecisionPriority = Literal["critical", "high", "medium", "low"]
EncounterCategory = Literal["combat", "social", "trap", "event"]
EventType = Literal["combat", "social", "trap", "other"]
SenderType = Literal["player", "gm", "system"]
OutcomeTier = Literal["critical_success", "success", "failure", "critical_failure"]
SessionStatus = Literal["idle", "active", "combat", "archived"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


# ---------------------------------------------------------------------------
# World roster: supplied by the persistence layer, read-only for the core
# ---------------------------------------------------------------------------

class Stats(BaseModel):
    """Ability scores. Unknown scores default to the average of 10."""

    strength: int = 10
    dexterity: int = 10
    constitution: int = 10
    intelligence: int = 10
    wisdom: int = 10
    charisma: int = 10


class PlayerCharacter(BaseModel):
    id: str
    name: str
    level: int = 1
    hp: int = 10
    max_hp: int = 10
    stats: Stats = Field(default_factory=Stats)
    initiative: int = 0  # initiative-bearing stat used for turn order


class Npc(BaseModel):
    id: str
    name: str
    location_id: str | None = None
    frequent_locations: list[str] = Field(default_factory=list)
    attitude: Literal["friendly", "neutral", "hostile", "unknown"] = "neutral"


class Enemy(BaseModel):
    id: str
    name: str
    type: str = "monster"  # undead | construct | beast | animal | humanoid | ...
    challenge_rating: int = 1
    hp: int = 10
    max_hp: int = 10
    attack: int = 0
    stats: Stats = Field(default_factory=Stats)
    initiative: int = 0
    location_id: str | None = None
    patrol_locations: list[str] = Field(default_factory=list)
    tactics: list[str] = Field(default_factory=list)  # e.g. "ambush", "stealth"
    abilities: list[str] = Field(default_factory=list)


class Location(BaseModel):
    id: str
    name: str
    type: str = ""  # "town", "forest", "dungeon", ...
    features: list[str] = Field(default_factory=list)  # "traps", "inn", "narrow_passage", ...
    danger_level: int | None = None


class ScheduledEvent(BaseModel):
    """A timeline event bound to a session day and optionally a location."""

    id: str
    title: str
    description: str = ""
    day: int
    location_id: str | None = None
    event_type: EventType = "other"


class WorldRoster(BaseModel):
    characters: list[PlayerCharacter] = Field(default_factory=list)
    npcs: list[Npc] = Field(default_factory=list)
    enemies: list[Enemy] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    events: list[ScheduledEvent] = Field(default_factory=list)

    def location(self, location_id: str) -> Location | None:
        return next((loc for loc in self.locations if loc.id == location_id), None)

    def enemies_by_id(self, ids: list[str]) -> list[Enemy]:
        wanted = set(ids)
        return [e for e in self.enemies if e.id in wanted]


# ---------------------------------------------------------------------------
# Encounter snapshot and detection output
# ---------------------------------------------------------------------------

class GameTime(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: int
    time_of_day: TimeOfDay = "morning"


class PartyStatus(BaseModel):
    """Aggregate party condition. Every dimension lives in [0, 100]."""

    average_hp: int = Field(default=100, ge=0, le=100)
    resources: int = Field(default=100, ge=0, le=100)
    morale: int = Field(default=100, ge=0, le=100)


class PartyDelta(BaseModel):
    hp_modifier: int = 0
    resource_modifier: int = 0
    morale_modifier: int = 0


class EncounterContext(BaseModel):
    """Immutable snapshot built fresh for each detection pass."""

    model_config = ConfigDict(frozen=True)

    location: Location
    time: GameTime
    player_characters: list[PlayerCharacter] = Field(default_factory=list)
    npcs: list[Npc] = Field(default_factory=list)
    enemies: list[Enemy] = Field(default_factory=list)
    events: list[ScheduledEvent] = Field(default_factory=list)
    weather: str | None = None
    party_status: PartyStatus = Field(default_factory=PartyStatus)


class EncounterInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: EncounterCategory
    participants: list[str] = Field(default_factory=list)  # character / npc / enemy ids
    location_id: str
    trigger_conditions: list[str] = Field(default_factory=list)
    priority: Priority
    recommended_action: str | None = None
    event_id: str | None = None  # set for encounters raised by a scheduled event

    def same_as(self, other: EncounterInfo) -> bool:
        return (
            self.category == other.category
            and self.location_id == other.location_id
            and self.participants == other.participants
            and self.event_id == other.event_id
        )


# ---------------------------------------------------------------------------
# Dice
# ---------------------------------------------------------------------------

class DiceSpecification(BaseModel):
    """A required (or voluntary) check: which dice, why, and against what DC."""

    notation: str
    modifier: int = 0
    reason: str
    difficulty: int | None = None
    skill_name: str | None = None
    character_id: str | None = None


class DiceRollResult(BaseModel):
    """One resolved roll. Immutable; the unit persisted into the message log."""

    model_config = ConfigDict(frozen=True)

    notation: str
    rolls: list[int]
    total: int
    purpose: str = ""
    modifier: int = 0
    critical: bool = False
    fumble: bool = False
    game_system: str = "dnd5e"
    success: bool | None = None  # only dice-pool systems decide success on their own


# ---------------------------------------------------------------------------
# Tactical decisions: one variant per action, discriminated on `action`
# ---------------------------------------------------------------------------

class Consequences(BaseModel):
    success: str
    failure: str


class _DecisionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    priority: DecisionPriority
    consequences: Consequences


class AmbushDecision(_DecisionBase):
    action: Literal["ambush"] = "ambush"
    check: DiceSpecification


class TrapDecision(_DecisionBase):
    action: Literal["trap"] = "trap"
    check: DiceSpecification


class CombatDecision(_DecisionBase):
    action: Literal["combat"] = "combat"
    check: DiceSpecification


class EscapeDecision(_DecisionBase):
    action: Literal["escape"] = "escape"
    check: DiceSpecification


class DialogueDecision(_DecisionBase):
    action: Literal["dialogue"] = "dialogue"


class NegotiateDecision(_DecisionBase):
    action: Literal["negotiate"] = "negotiate"


TacticalDecision = Annotated[
    Union[
        AmbushDecision,
        TrapDecision,
        CombatDecision,
        EscapeDecision,
        DialogueDecision,
        NegotiateDecision,
    ],
    Field(discriminator="action"),
]

CheckedDecision = Annotated[
    Union[AmbushDecision, TrapDecision, CombatDecision, EscapeDecision],
    Field(discriminator="action"),
]


# ---------------------------------------------------------------------------
# Session state, log and history
# ---------------------------------------------------------------------------

class SessionMessage(BaseModel):
    """A single entry in the session's append-only message stream."""

    id: str = Field(default_factory=_new_id)
    sender: str
    sender_type: SenderType
    text: str
    timestamp: datetime = Field(default_factory=_now)
    action_type: str | None = None  # present on player action messages only


class SessionCurrentState(BaseModel):
    session_id: str = Field(default_factory=_new_id)
    campaign_title: str = ""
    status: SessionStatus = "idle"
    current_day: int = 1
    current_time_of_day: TimeOfDay = "morning"
    action_count: int = 0
    max_actions_per_day: int = 5
    current_location_id: str = ""
    active_character_id: str | None = None
    combat_mode: bool = False
    initiative_order: list[str] = Field(default_factory=list)
    party_status: PartyStatus = Field(default_factory=PartyStatus)
    weather: str | None = None


class EncounterRecord(BaseModel):
    """Write-once history entry for one resolved encounter."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=_now)
    day: int
    time_of_day: TimeOfDay
    location_id: str
    category: EncounterCategory
    participants: list[str]
    action: str
    outcome: OutcomeTier
    description: str
    difficulty: int | None = None
    roll_total: int
    surprise: bool = False
    event_id: str | None = None  # scheduled event this encounter resolved


class PendingRequirement(BaseModel):
    """The mandatory-dice gate: one judged encounter awaiting its roll."""

    encounter: EncounterInfo
    decision: CheckedDecision
    attempts: int = 0

    @property
    def specification(self) -> DiceSpecification:
        return self.decision.check


class SessionSnapshot(BaseModel):
    """Everything written to disk for one session."""

    state: SessionCurrentState
    messages: list[SessionMessage] = Field(default_factory=list)
    encounter_history: list[EncounterRecord] = Field(default_factory=list)
    pending: PendingRequirement | None = None
    pending_encounters: list[PendingRequirement] = Field(default_factory=list)
