"""Health check, settings and narrative connection check endpoints."""

import httpx
from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from backend import state
from trpg_session.config import update_config

from .models import CheckConnectionBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/check-connection")
async def check_connection(body: CheckConnectionBody):
    """Quick reachability check against a narrative provider URL."""
    url = f"{body.provider_url.rstrip('/')}/api/v1/model"
    headers: dict[str, str] = {}
    if body.api_key:
        headers["Authorization"] = f"Bearer {body.api_key}"
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
        return {"ok": True}
    except httpx.HTTPError:
        return {"ok": False}


@router.get("/settings")
async def get_settings():
    """Effective session configuration."""
    return state.config()


@router.patch("/settings")
async def update_settings(body: dict):
    """Partial update; persisted to config.json. Applies to sessions started afterwards."""
    try:
        updated = update_config(state.config(), body)
    except ValidationError as e:
        raise HTTPException(400, str(e))
    state.set_config(updated)
    return updated
