"""Encounter detection.

Scans an EncounterContext for two kinds of collision:

  spatial:  enemies or NPCs registered at (or moving through) the party's
             current location
  temporal: scheduled events bound to the current day and, when they name
             one, the current location

Results are merged spatial-first and stably sorted by priority, so among equal
priorities spatial encounters always precede scheduled ones. Only a `high`
top result is judged immediately; the rest are surfaced for the table to act
on.
"""

from __future__ import annotations

import logging
import random
from typing import Callable

from pydantic import BaseModel, Field

from trpg_session.models import EncounterContext, EncounterInfo, TacticalDecision
from trpg_session.tactics import judge_encounter

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}

Judge = Callable[[EncounterInfo, EncounterContext], TacticalDecision]


class DetectionResult(BaseModel):
    encounters: list[EncounterInfo] = Field(default_factory=list)
    immediate_action: TacticalDecision | None = None


def detect_spatial_collisions(context: EncounterContext) -> list[EncounterInfo]:
    encounters: list[EncounterInfo] = []
    location_id = context.location.id
    party_ids = [c.id for c in context.player_characters]
    if not party_ids:
        return encounters

    enemies_here = [
        e for e in context.enemies
        if e.location_id == location_id or location_id in e.patrol_locations
    ]
    if enemies_here:
        encounters.append(EncounterInfo(
            category="combat",
            participants=party_ids + [e.id for e in enemies_here],
            location_id=location_id,
            trigger_conditions=["contact at the same location", "hostile presence confirmed"],
            priority="high",
            recommended_action="Possible combat encounter. Call for a perception check.",
        ))

    npcs_here = [
        n for n in context.npcs
        if n.location_id == location_id or location_id in n.frequent_locations
    ]
    if npcs_here:
        encounters.append(EncounterInfo(
            category="social",
            participants=party_ids + [n.id for n in npcs_here],
            location_id=location_id,
            trigger_conditions=["NPC present", "chance to talk"],
            priority="medium",
        ))

    return encounters


def detect_temporal_overlaps(context: EncounterContext) -> list[EncounterInfo]:
    encounters: list[EncounterInfo] = []
    location_id = context.location.id

    for event in context.events:
        if event.day != context.time.day:
            continue
        if event.location_id and event.location_id != location_id:
            continue

        if event.event_type == "combat":
            encounters.append(EncounterInfo(
                category="combat",
                location_id=location_id,
                trigger_conditions=[f"scheduled combat: {event.title}"],
                priority="high",
                recommended_action="A combat event begins. Urge the party to prepare.",
                event_id=event.id,
            ))
        elif event.event_type == "social":
            encounters.append(EncounterInfo(
                category="social",
                location_id=location_id,
                trigger_conditions=[f"scheduled social event: {event.title}"],
                priority="medium",
                event_id=event.id,
            ))
        elif event.event_type == "trap":
            encounters.append(EncounterInfo(
                category="trap",
                location_id=location_id,
                trigger_conditions=[f"scheduled trap: {event.title}"],
                priority="high",
                event_id=event.id,
            ))
        else:
            encounters.append(EncounterInfo(
                category="event",
                location_id=location_id,
                trigger_conditions=[f"scheduled event: {event.title}"],
                priority="low",
                event_id=event.id,
            ))

    return encounters


def prioritize(encounters: list[EncounterInfo]) -> list[EncounterInfo]:
    """Highest priority first; input order kept among equals."""
    return sorted(encounters, key=lambda e: PRIORITY_RANK[e.priority], reverse=True)


def detect_encounters(
    context: EncounterContext,
    judge: Judge | None = None,
    *,
    rng: random.Random | None = None,
) -> DetectionResult:
    encounters = prioritize(detect_spatial_collisions(context) + detect_temporal_overlaps(context))

    immediate: TacticalDecision | None = None
    if encounters and encounters[0].priority == "high":
        top = encounters[0]
        if judge is not None:
            immediate = judge(top, context)
        else:
            immediate = judge_encounter(top, context, rng=rng)
        logger.info(
            "high-priority %s encounter at %s judged as %s",
            top.category, top.location_id, immediate.action,
        )

    return DetectionResult(encounters=encounters, immediate_action=immediate)
