"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, settings, check-connection) and the live
session (lifecycle, actions, combat, party, dice, narration). The API serves
one live session at a time, nested under /api/session/.
"""

from fastapi import APIRouter

from .sessions import router as sessions_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(sessions_router)
