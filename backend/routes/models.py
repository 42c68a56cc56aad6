"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel, Field

from trpg_session.models import TimeOfDay
from trpg_session.session import ActionType, NarrativeKind


class StartSessionBody(BaseModel):
    location_id: str
    campaign_title: str = ""


class SelectCharacterBody(BaseModel):
    character_id: str


class ActionBody(BaseModel):
    type: ActionType
    target: str | None = None
    label: str = ""


class MoveBody(BaseModel):
    location_id: str


class TimeOfDayBody(BaseModel):
    time_of_day: TimeOfDay


class StartCombatBody(BaseModel):
    enemy_ids: list[str] = Field(default_factory=list)


class RollBody(BaseModel):
    notation: str
    purpose: str = ""


class BatchRollBody(BaseModel):
    notations: list[str] = Field(min_length=1, max_length=20)
    purpose: str = ""


class MandatedRollBody(BaseModel):
    notation: str | None = None  # defaults to the required notation


class NarrateBody(BaseModel):
    prompt: str
    kind: NarrativeKind = "narration"


class CheckConnectionBody(BaseModel):
    provider_url: str
    api_key: str = ""
