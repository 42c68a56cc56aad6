"""Live session endpoints: lifecycle, actions, combat, party, dice, narration."""

from fastapi import APIRouter, HTTPException

from backend import state
from trpg_session.dice import DiceNotationError
from trpg_session.models import PartyDelta
from trpg_session.narrative import LLMError, NarrativeTimeout
from trpg_session.session import SessionAction

from .models import (
    ActionBody,
    BatchRollBody,
    MandatedRollBody,
    MoveBody,
    NarrateBody,
    RollBody,
    SelectCharacterBody,
    StartCombatBody,
    StartSessionBody,
    TimeOfDayBody,
)

router = APIRouter()


@router.post("/session")
async def start_session(body: StartSessionBody):
    """Start a new session at a location."""
    controller = state.start_session(body.location_id, body.campaign_title)
    return controller.state


@router.get("/session")
async def get_session():
    """Current session state."""
    return state.current_session().state


@router.get("/sessions")
async def list_sessions():
    """Ids of all saved sessions."""
    return state.storage().list_sessions()


@router.post("/sessions/{session_id}/load")
async def load_session(session_id: str):
    """Make a saved session the live one."""
    controller = state.load_session(session_id)
    if controller is None:
        raise HTTPException(404, "Session not found")
    return controller.state


@router.get("/session/messages")
async def get_messages():
    """The session's message log, oldest first."""
    return state.current_session().messages


@router.get("/session/encounters")
async def get_encounters():
    """Encounter history, the pending dice check and anything queued behind it."""
    controller = state.current_session()
    detection = controller.last_detection
    return {
        "history": controller.encounter_history,
        "pending": controller.pending,
        "queued": controller.pending_encounters,
        "detected": detection.encounters if detection else [],
    }


@router.get("/session/actions")
async def get_actions():
    """Actions available at the current location."""
    return state.current_session().available_actions()


@router.post("/session/select")
async def select_character(body: SelectCharacterBody):
    """Set the active character."""
    controller = state.current_session()
    try:
        controller.select_character(body.character_id)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return controller.state


@router.post("/session/actions")
async def execute_action(body: ActionBody):
    """Spend one of today's actions. Rejections come back with ok=false."""
    controller = state.current_session()
    action = SessionAction(type=body.type, label=body.label)
    return controller.execute_action(action, body.target)


@router.post("/session/move")
async def move(body: MoveBody):
    """Move the party without spending an action."""
    controller = state.current_session()
    controller.move_to(body.location_id)
    return controller.state


@router.post("/session/time")
async def set_time_of_day(body: TimeOfDayBody):
    controller = state.current_session()
    controller.set_time_of_day(body.time_of_day)
    return controller.state


@router.post("/session/advance-day")
async def advance_day():
    """Start the next day."""
    controller = state.current_session()
    controller.advance_day()
    return controller.state


@router.post("/session/combat")
async def start_combat(body: StartCombatBody):
    """Enter combat with the named enemies; returns the initiative order."""
    controller = state.current_session()
    return {"initiative_order": controller.start_combat(body.enemy_ids)}


@router.delete("/session/combat")
async def end_combat():
    controller = state.current_session()
    controller.end_combat()
    return controller.state


@router.patch("/session/party")
async def update_party(body: PartyDelta):
    """Apply HP / resource / morale deltas (clamped to 0-100)."""
    return state.current_session().update_party_status(body)


@router.post("/session/rolls")
async def roll_dice(body: RollBody):
    """Voluntary roll. Allowed while a dice check is pending."""
    return state.current_session().roll_dice(body.notation, body.purpose)


@router.post("/session/rolls/batch")
async def batch_roll(body: BatchRollBody):
    """Several voluntary rolls at once under the configured game system."""
    try:
        return state.current_session().roll_batch(body.notations, body.purpose)
    except DiceNotationError as e:
        raise HTTPException(400, str(e))


@router.post("/session/rolls/mandated")
async def mandated_roll(body: MandatedRollBody):
    """Roll for the pending dice check."""
    return state.current_session().roll_for_requirement(body.notation)


@router.post("/session/save")
async def save_session():
    return {"ok": state.current_session().save()}


@router.post("/session/archive")
async def archive_session():
    """Save the session as archived; it accepts no further changes."""
    return {"ok": state.current_session().archive()}


@router.post("/session/narrate")
async def narrate(body: NarrateBody):
    """Ask the narrative backend for GM text or event seeds."""
    controller = state.current_session()
    try:
        result = await controller.narrate(body.prompt, body.kind)
    except NarrativeTimeout as e:
        raise HTTPException(504, str(e))
    except LLMError as e:
        raise HTTPException(502, str(e))
    return result


@router.delete("/session/narrate")
async def cancel_narration():
    return {"cancelled": state.current_session().cancel_narration()}
