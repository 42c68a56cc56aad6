"""Narrative generation: the request/response boundary to a text model.

The session never talks to a model directly. It builds a NarrativeRequest,
hands it to a NarrativeClient and awaits a NarrativeResponse (plain GM text)
or a list of EventSeed proposals (structured payload).

The client wraps any callable matching the LLM protocol:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` names the kind of request ("narration", "event_seeds") so a backend
can log or route on it. Two implementations are provided:

    HttpLLM: KoboldCpp or OpenAI-compatible completion endpoint over httpx
    EchoLLM: returns the prompt; wiring smoke tests without a model

Every request is bounded by the client's timeout (NarrativeTimeout on expiry)
and can be cancelled by cancelling the awaiting task; nothing is retried.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from trpg_session.models import EventType

logger = logging.getLogger(__name__)


class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


class LLMError(RuntimeError):
    """The narrative backend could not be reached or answered badly."""


class NarrativeTimeout(LLMError):
    """The narrative backend did not answer within the configured timeout."""


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class GenerationSettings(BaseModel):
    max_tokens: int
    temperature: float
    stop: list[str] = Field(default_factory=list)


# stage → sampling; unknown stages get the narration settings
STAGE_SETTINGS: dict[str, GenerationSettings] = {
    "narration": GenerationSettings(max_tokens=300, temperature=0.8, stop=["\nRequest:", "\nSituation:"]),
    "event_seeds": GenerationSettings(max_tokens=600, temperature=0.4),
}


class HttpLLM:
    """Narrative backend speaking the KoboldCpp or OpenAI completion protocol.

    Each stage is sent with its own GenerationSettings, translated into the
    provider's field names:

        koboldcpp  POST /api/v1/generate  max_length, temperature, stop_sequence
                   reply {"results": [{"text": ...}]}
        openai     POST /v1/completions   model, max_tokens, temperature, stop
                   reply {"choices": [{"text": ..., "finish_reason": ...}]}

    A reply cut off by the token limit is still returned; a warning is logged.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    @property
    def endpoint(self) -> str:
        path = "/v1/completions" if self._format == "openai" else "/api/v1/generate"
        return self._base_url + path

    def request_body(self, stage: str, prompt: str) -> dict[str, Any]:
        settings = STAGE_SETTINGS.get(stage, STAGE_SETTINGS["narration"])
        if self._format == "openai":
            body: dict[str, Any] = {
                "prompt": prompt,
                "max_tokens": settings.max_tokens,
                "temperature": settings.temperature,
            }
            if self._model:
                body["model"] = self._model
            if settings.stop:
                body["stop"] = settings.stop
            return body

        body = {
            "prompt": prompt,
            "max_length": settings.max_tokens,
            "temperature": settings.temperature,
        }
        if settings.stop:
            body["stop_sequence"] = settings.stop
        return body

    def _completion(self, stage: str, data: dict) -> str:
        key = "choices" if self._format == "openai" else "results"
        entries = data.get(key)
        if not entries or "text" not in entries[0]:
            raise LLMError(f"Unexpected response format from {self._format} backend")
        if entries[0].get("finish_reason") == "length":
            logger.warning("%s reply hit the token limit and may be cut off", stage)
        return entries[0]["text"]

    async def __call__(self, stage: str, prompt: str) -> str:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        logger.debug("narrative request stage=%s url=%s prompt_len=%d", stage, self.endpoint, len(prompt))
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self.endpoint, json=self.request_body(stage, prompt), headers=headers)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to narrative backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"Narrative backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise NarrativeTimeout(f"Narrative backend timed out after {self._timeout}s") from e

        text = self._completion(stage, resp.json())
        logger.debug("narrative response stage=%s len=%d", stage, len(text))
        return text


class EchoLLM:
    """Returns the prompt unchanged. No network calls."""

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt


# ---------------------------------------------------------------------------
# Requests and responses
# ---------------------------------------------------------------------------

class NarrativeRequest(BaseModel):
    """Free-text instruction plus structured session context."""

    prompt: str
    context: dict[str, Any] = Field(default_factory=dict)
    history: list[str] = Field(default_factory=list)  # recent log lines, oldest first


class NarrativeResponse(BaseModel):
    text: str


class EventSeed(BaseModel):
    """A proposed scheduled event returned by the event_seeds stage."""

    title: str
    description: str = ""
    event_type: EventType = "other"
    day_offset: int = 0  # days from the current day
    location_id: str | None = None


def build_narration_prompt(request: NarrativeRequest) -> str:
    context_text = "\n".join(f"{k}: {v}" for k, v in request.context.items())
    history_text = "\n".join(request.history[-20:])
    return (
        "You are the game master of a tabletop role-playing session.\n\n"
        f"Situation:\n{context_text}\n\n"
        f"Recent log:\n{history_text}\n\n"
        f"Request: {request.prompt}\n\n"
        "Answer with a short in-world narration. Do not decide dice results."
    )


def build_event_seed_prompt(request: NarrativeRequest) -> str:
    context_text = "\n".join(f"{k}: {v}" for k, v in request.context.items())
    return (
        f"Situation:\n{context_text}\n\n"
        f"Request: {request.prompt}\n\n"
        "Propose upcoming events as a JSON array. Each element:\n"
        '  {"title": "<short>", "description": "<one sentence>",\n'
        '   "event_type": "combat|social|trap|other", "day_offset": <int>}\n'
        "Return only the JSON array, no other text."
    )


def parse_event_seeds(output: str) -> list[EventSeed]:
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        logger.warning("Event seed stage returned invalid JSON: %r", output[:200])
        return []
    if not isinstance(data, list):
        logger.warning("Event seed payload must be a JSON array, got %s", type(data).__name__)
        return []

    seeds: list[EventSeed] = []
    for item in data:
        try:
            seeds.append(EventSeed.model_validate(item))
        except ValidationError:
            logger.warning("Skipping malformed event seed %r", item)
    return seeds


class NarrativeClient:
    """Times out and unwraps calls to an LLM for the session."""

    def __init__(self, llm: LLM, timeout: float = 120.0) -> None:
        self._llm = llm
        self._timeout = timeout

    async def _call(self, stage: str, prompt: str) -> str:
        try:
            return await asyncio.wait_for(self._llm(stage, prompt), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise NarrativeTimeout(f"Narrative stage {stage!r} timed out after {self._timeout}s") from e

    async def generate(self, request: NarrativeRequest) -> NarrativeResponse:
        text = await self._call("narration", build_narration_prompt(request))
        return NarrativeResponse(text=text.strip())

    async def propose_event_seeds(self, request: NarrativeRequest) -> list[EventSeed]:
        output = await self._call("event_seeds", build_event_seed_prompt(request))
        return parse_event_seeds(output)
