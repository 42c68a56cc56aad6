"""Session configuration (action economy, data directory, narrative backend).

Values are resolved in three layers, later layers winning:

  1. built-in defaults (SessionConfig field defaults)
  2. environment: a .env file loaded through python-dotenv, then TRPG_*
     variables (TRPG_DATA_DIR, TRPG_MAX_ACTIONS_PER_DAY, TRPG_LLM_URL,
     TRPG_LLM_API_KEY, TRPG_LLM_FORMAT, TRPG_LLM_MODEL, TRPG_NARRATIVE_TIMEOUT,
     TRPG_GAME_SYSTEM)
  3. {data_dir}/config.json: partial overrides, unknown keys ignored

update_config() writes partial updates back to config.json and returns the
merged result.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from trpg_session.dice import GameSystem

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path("data")

_ENV_KEYS: dict[str, str] = {
    "data_dir": "TRPG_DATA_DIR",
    "max_actions_per_day": "TRPG_MAX_ACTIONS_PER_DAY",
    "llm_provider_url": "TRPG_LLM_URL",
    "llm_api_key": "TRPG_LLM_API_KEY",
    "llm_provider_format": "TRPG_LLM_FORMAT",
    "llm_model": "TRPG_LLM_MODEL",
    "narrative_timeout": "TRPG_NARRATIVE_TIMEOUT",
    "game_system": "TRPG_GAME_SYSTEM",
}


class SessionConfig(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    max_actions_per_day: int = Field(default=5, ge=1)
    llm_provider_url: str = ""
    llm_api_key: str = ""
    llm_provider_format: Literal["koboldcpp", "openai"] = "koboldcpp"
    llm_model: str = ""
    narrative_timeout: float = Field(default=120.0, gt=0)
    game_system: GameSystem = "dnd5e"  # rules for voluntary rolls; mandated checks are always d20

    @property
    def narrative_enabled(self) -> bool:
        return bool(self.llm_provider_url)


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _stored_overrides(data_dir: Path) -> dict[str, Any]:
    path = _config_path(data_dir)
    if not path.is_file():
        return {}
    stored = json.loads(path.read_text())
    known = set(SessionConfig.model_fields) - {"data_dir"}
    ignored = set(stored) - known
    if ignored:
        logger.warning("Ignoring unknown config keys: %s", sorted(ignored))
    return {k: v for k, v in stored.items() if k in known}


def load_config(env_file: Path | None = None, data_dir: Path | None = None) -> SessionConfig:
    """Build the effective config from defaults, environment and config.json."""
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    values: dict[str, Any] = {}
    for field, env_key in _ENV_KEYS.items():
        raw = os.getenv(env_key)
        if raw:
            values[field] = raw
    if data_dir is not None:
        values["data_dir"] = data_dir

    config = SessionConfig.model_validate(values)
    overrides = _stored_overrides(config.data_dir)
    if overrides:
        config = SessionConfig.model_validate({**config.model_dump(), **overrides})
    logger.debug("config loaded data_dir=%s max_actions=%d", config.data_dir, config.max_actions_per_day)
    return config


def update_config(config: SessionConfig, fields: dict[str, Any]) -> SessionConfig:
    """Merge fields into config and persist them. Returns the new config."""
    known = set(SessionConfig.model_fields) - {"data_dir"}
    updates = {k: v for k, v in fields.items() if k in known}
    merged = SessionConfig.model_validate({**config.model_dump(), **updates})

    path = _config_path(merged.data_dir)
    stored = json.loads(path.read_text()) if path.is_file() else {}
    stored.update(updates)
    merged.data_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(stored, indent=2))
    return merged
