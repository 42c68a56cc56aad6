"""Process-wide session holder for the API.

The API serves one live session at a time. init_state() points the holder at
a data directory; start_session() replaces the live controller; the routes
reach it through current_session(), which raises when nothing is running.

Layout under the data directory is owned by trpg_session.storage.Storage:

    data/
      world.json          World roster (characters, NPCs, enemies, locations, events)
      sessions/<id>.json  Saved session snapshots
      config.json         Optional SessionConfig overrides
"""

from __future__ import annotations

import logging
from pathlib import Path

from trpg_session.config import SessionConfig, load_config
from trpg_session.narrative import HttpLLM, NarrativeClient
from trpg_session.session import SessionController
from trpg_session.storage import Storage

logger = logging.getLogger(__name__)

_storage: Storage | None = None
_config: SessionConfig | None = None
_controller: SessionController | None = None


class NoActiveSession(LookupError):
    """No session has been started (or loaded) yet."""


def init_state(data_dir: Path) -> None:
    global _storage, _config, _controller
    data_dir.mkdir(parents=True, exist_ok=True)
    _config = load_config(data_dir=data_dir)
    _storage = Storage(data_dir)
    _controller = None
    logger.info("session state initialised at %s", data_dir)


def storage() -> Storage:
    assert _storage is not None, "Call init_state() before using the session API"
    return _storage


def config() -> SessionConfig:
    assert _config is not None, "Call init_state() before using the session API"
    return _config


def set_config(updated: SessionConfig) -> None:
    global _config
    _config = updated


def narrative_client(cfg: SessionConfig) -> NarrativeClient | None:
    if not cfg.narrative_enabled:
        return None
    llm = HttpLLM(
        cfg.llm_provider_url,
        api_key=cfg.llm_api_key,
        provider_format=cfg.llm_provider_format,
        model=cfg.llm_model,
        timeout=cfg.narrative_timeout,
    )
    return NarrativeClient(llm, timeout=cfg.narrative_timeout)


def start_session(location_id: str, campaign_title: str = "") -> SessionController:
    """Create a fresh controller over the stored world and start it."""
    global _controller
    cfg = config()
    controller = SessionController(
        storage().load_world(),
        config=cfg,
        storage=storage(),
        narrative=narrative_client(cfg),
    )
    controller.start(location_id, campaign_title)
    _controller = controller
    return controller


def load_session(session_id: str) -> SessionController | None:
    """Make a saved session the live one. None when no snapshot exists."""
    global _controller
    snapshot = storage().load_session(session_id)
    if snapshot is None:
        return None
    cfg = config()
    _controller = SessionController.restore(
        snapshot,
        storage().load_world(),
        config=cfg,
        storage=storage(),
        narrative=narrative_client(cfg),
    )
    return _controller


def current_session() -> SessionController:
    if _controller is None:
        raise NoActiveSession("No session is running")
    return _controller
