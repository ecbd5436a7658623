"""Shared completion-service client for the AI-powered pipeline nodes.

``OllamaClient.complete`` handles the HTTP call, retries and response
caching common to the annotation, dialogue and narrator passes.
``parse_directions`` turns the returned content into ``Direction`` records.
Any object with an async ``complete(CompletionRequest) -> str`` method can
stand in for the client (the tests use in-process fakes).
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

import httpx
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from ..cache import TTLCache, make_key
from ..errors import CompletionError
from ..models import Direction

log = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$")


@dataclass(frozen=True)
class CompletionRequest:
    system_prompt: str
    user_prompt: str
    max_output_tokens: int = 4096
    temperature: float = 0.7
    expect_json: bool = True


class CompletionClient(Protocol):
    async def complete(self, request: CompletionRequest) -> str: ...


def deadline_passed(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


async def complete_by(
    client: CompletionClient,
    request: CompletionRequest,
    deadline: Optional[float] = None,
) -> str:
    """``client.complete`` bounded by an absolute ``time.monotonic()`` deadline.

    A call still in flight when the deadline passes is cancelled.  Raises
    ``CompletionError`` if the deadline has passed or expires mid-call.
    """
    if deadline is None:
        return await client.complete(request)
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise CompletionError("deadline exceeded")
    try:
        return await asyncio.wait_for(client.complete(request), timeout=remaining)
    except asyncio.TimeoutError as e:
        raise CompletionError("deadline exceeded") from e


class OllamaClient:
    """Ollama ``/api/generate`` client.

    Transport errors and 5xx responses are retried with exponential backoff;
    4xx responses fail immediately.  Successful responses are cached by a
    hash of the request.
    """

    def __init__(
        self,
        base_url: str,
        model_name: str,
        timeout_s: float = 120.0,
        max_retries: int = 2,
        backoff_s: float = 0.5,
        cache: Optional[TTLCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self.cache = cache
        self._client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def complete(self, request: CompletionRequest) -> str:
        key = make_key(self.model_name, asdict(request))
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                log.debug("Completion cache hit (%s)", key[:12])
                return cached

        payload = {
            "model": self.model_name,
            "prompt": request.user_prompt,
            "system": request.system_prompt,
            "stream": False,
            "options": {
                "num_predict": request.max_output_tokens,
                "temperature": request.temperature,
            },
        }
        if request.expect_json:
            payload["format"] = "json"

        resp = await self._post_with_retries(payload)
        try:
            content = resp.json().get("response", "")
        except ValueError as e:
            raise CompletionError(f"Ollama returned a non-JSON body: {e}") from e
        if not isinstance(content, str) or not content.strip():
            raise CompletionError("Ollama returned empty content")

        if self.cache is not None:
            self.cache.set(key, content)
        return content

    async def _post_with_retries(self, payload: dict) -> httpx.Response:
        url = f"{self.base_url}/api/generate"
        attempt = 0
        while True:
            try:
                resp = await self._client.post(url, json=payload)
                if resp.status_code < 500:
                    resp.raise_for_status()
                    return resp
                error: Exception = httpx.HTTPStatusError(
                    f"server error {resp.status_code}", request=resp.request, response=resp,
                )
            except httpx.HTTPStatusError as e:
                raise CompletionError(f"Ollama request failed: {e}") from e
            except httpx.TransportError as e:
                error = e

            if attempt >= self.max_retries:
                raise CompletionError(
                    f"Ollama request failed after {attempt + 1} attempt(s): {error}"
                ) from error
            delay = self.backoff_s * (2 ** attempt)
            log.warning("Ollama call failed (%s), retrying in %.1fs", error, delay)
            attempt += 1
            await asyncio.sleep(delay)


class _DirectionItem(BaseModel):
    index: int
    audio_tags: str = Field(default="", validation_alias=AliasChoices("audioTags", "audio_tags"))
    stability: Optional[float] = None
    style: Optional[float] = None
    reasoning: str = ""


def parse_directions(content: Optional[str]) -> list[Direction]:
    """Parse ``{"directions": [...]}`` content into ``Direction`` records.

    Raises ``CompletionError`` when the content is empty, not JSON or lacks
    a ``directions`` list.  Malformed entries are skipped.  Bare tags such as
    ``"angry"`` are wrapped into ``"[angry]"``.
    """
    if not content or not content.strip():
        raise CompletionError("empty completion content")

    text = _FENCE.sub("", content.strip())
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise CompletionError(f"completion content is not valid JSON: {text[:200]}") from e

    if isinstance(parsed, dict):
        items = parsed.get("directions")
    else:
        items = parsed
    if not isinstance(items, list):
        raise CompletionError("completion content has no 'directions' list")

    directions: list[Direction] = []
    for raw in items:
        try:
            item = _DirectionItem.model_validate(raw)
        except ValidationError:
            log.debug("Skipping malformed direction entry: %r", raw)
            continue
        audio_tags = item.audio_tags.strip()
        if audio_tags and "[" not in audio_tags:
            audio_tags = f"[{audio_tags}]"
        directions.append(Direction(
            index=item.index,
            audio_tags=audio_tags,
            stability=_clamp(item.stability),
            style=_clamp(item.style),
            reasoning=item.reasoning,
        ))
    return directions


def _clamp(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return max(0.0, min(1.0, value))
