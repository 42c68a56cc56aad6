"""JSON file storage.

World data and session snapshots are flat JSON files under a base directory.
Reads and writes go through a handful of helpers that load and dump pydantic
models; there is no database.

Directory layout:

    {base}/
      world.json              ← WorldRoster (characters, npcs, enemies, locations, events)
      sessions/
        {session_id}.json     ← SessionSnapshot (state, messages, encounter history, gate)

The session core only ever reads world.json. save_world() exists for seeding
and tests.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from trpg_session.models import SessionSnapshot, WorldRoster

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._sessions_root = base_path / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _world_file(self) -> Path:
        return self._base / "world.json"

    def _session_file(self, session_id: str) -> Path:
        return self._sessions_root / f"{session_id}.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # World roster
    # ------------------------------------------------------------------

    def load_world(self) -> WorldRoster:
        """Empty roster when no world.json has been written yet."""
        path = self._world_file()
        if not path.exists():
            logger.debug("no world file at %s, using an empty roster", path)
            return WorldRoster()
        return WorldRoster.model_validate(self._read_json(path))

    def save_world(self, world: WorldRoster) -> None:
        self._write_json(self._world_file(), world.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def save_session(self, snapshot: SessionSnapshot) -> None:
        """Overwrite the snapshot for its session id. OSError propagates."""
        path = self._session_file(snapshot.state.session_id)
        path.write_text(snapshot.model_dump_json(indent=2))
        logger.debug("saved session %s (%d messages)", snapshot.state.session_id, len(snapshot.messages))

    def load_session(self, session_id: str) -> SessionSnapshot | None:
        path = self._session_file(session_id)
        if not path.exists():
            return None
        return SessionSnapshot.model_validate_json(path.read_text())

    def list_sessions(self) -> list[str]:
        """Session ids with a saved snapshot, sorted."""
        return sorted(p.stem for p in self._sessions_root.glob("*.json"))
