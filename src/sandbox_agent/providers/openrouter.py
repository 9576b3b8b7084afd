"""OpenRouter chat-completions gateway.

``decide()`` asks for a JSON-mode completion and validates it into an
``AgentDecision``, re-prompting with the parse error up to
``max_corrections`` times.  ``decide_stream()`` asks for an SSE stream and
forwards reasoning and content deltas as ``ModelChunk`` values; the decision
is parsed once the stream has ended and delivered on the final ``done``
chunk.

Configuration via environment variables (or explicit constructor args):
  OPENROUTER_API_KEY      - required for any call
  OPENROUTER_MODEL        - default: xiaomi/mimo-v2-flash:free
  OPENROUTER_BASE_URL     - default: https://openrouter.ai/api/v1
  OPENROUTER_TIMEOUT_SEC  - default: 120
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from sandbox_agent.domain.contracts import CHUNK_CONTENT, CHUNK_DONE, CHUNK_REASONING, ModelChunk
from sandbox_agent.domain.errors import ProtocolError, UpstreamError
from sandbox_agent.domain.operations import AgentDecision, decode_decision
from sandbox_agent.observability.structured_log import log_json
from sandbox_agent.providers.transport import (
    build_httpx_client,
    describe_http_error,
    post_json_with_retries,
    status_code_of,
)
from sandbox_agent.util import redact

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "xiaomi/mimo-v2-flash:free"
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT_SEC = 120
DEFAULT_MAX_CORRECTIONS = 3

_APP_HEADERS = {
    "HTTP-Referer": "https://github.com/sandbox-agent/sandbox-agent",
    "X-Title": "Sandbox Agent FS Controller",
}


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        return max(1, int(raw)) if raw else default
    except ValueError:
        return default


def correction_prompt(error: str) -> str:
    return (
        f"Your previous response was invalid JSON. Error: {error}. "
        "Please ensure you return valid JSON."
    )


class OpenRouterGateway:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_sec: Optional[int] = None,
        max_corrections: int = DEFAULT_MAX_CORRECTIONS,
        retry_attempts: int = 3,
        retry_backoff_sec: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = (api_key or os.environ.get("OPENROUTER_API_KEY") or "").strip()
        self._model = (model or os.environ.get("OPENROUTER_MODEL") or DEFAULT_MODEL).strip()
        self._base_url = (base_url or os.environ.get("OPENROUTER_BASE_URL") or DEFAULT_BASE_URL).strip().rstrip("/")
        self._timeout_sec = timeout_sec or _env_int("OPENROUTER_TIMEOUT_SEC", DEFAULT_TIMEOUT_SEC)
        self._max_corrections = max(0, int(max_corrections))
        self._retry_attempts = max(1, int(retry_attempts))
        self._retry_backoff_sec = retry_backoff_sec
        self._client = client

    @property
    def model(self) -> str:
        return self._model

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def version(self) -> str:
        return f"openrouter/{self._model}"

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = build_httpx_client(
                base_url=self._base_url,
                headers={},
                connect_timeout_sec=10.0,
                read_timeout_sec=float(self._timeout_sec),
            )
        return self._client

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise UpstreamError("OPENROUTER_API_KEY is not set in environment variables.")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            **_APP_HEADERS,
        }

    async def decide(self, messages: Sequence[Dict[str, str]]) -> AgentDecision:
        conversation: List[Dict[str, str]] = [dict(m) for m in messages]
        last_error = ""
        for attempt in range(self._max_corrections + 1):
            content, usage = await self._complete(conversation)
            try:
                decision = decode_decision(content)
            except ProtocolError as exc:
                last_error = str(exc)
                log_json(
                    logger,
                    "provider.decide.retry",
                    level=logging.WARNING,
                    model=self._model,
                    attempt=attempt + 1,
                    error=last_error[:300],
                )
                conversation.append({"role": "assistant", "content": content})
                conversation.append({"role": "user", "content": correction_prompt(last_error)})
                continue
            if usage:
                decision.usage = usage
            return decision
        raise ProtocolError(f"Invalid JSON response after retries: {last_error}")

    async def _complete(self, messages: Sequence[Dict[str, str]]) -> tuple[str, Dict[str, Any]]:
        payload = {
            "model": self._model,
            "messages": list(messages),
            "response_format": {"type": "json_object"},
        }
        headers = self._headers()
        client = self._get_client()
        try:
            resp = await post_json_with_retries(
                client,
                path=self._endpoint(),
                payload=payload,
                headers=headers,
                attempts=self._retry_attempts,
                base_backoff_sec=self._retry_backoff_sec,
            )
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamError(
                redact(f"OpenRouter API Error: {describe_http_error(exc)}"),
                status_code=status_code_of(exc),
            ) from exc
        choices = data.get("choices") or []
        message = (choices[0] or {}).get("message") if choices else None
        content = str((message or {}).get("content") or "")
        if not content:
            raise ProtocolError("LLM returned empty content.")
        return content, dict(data.get("usage") or {})

    async def decide_stream(self, messages: Sequence[Dict[str, str]]) -> AsyncIterator[ModelChunk]:
        payload = {
            "model": self._model,
            "messages": list(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
            "include_reasoning": True,
        }
        client = self._get_client()
        headers = self._headers()
        content_parts: List[str] = []
        usage: Dict[str, Any] = {}
        try:
            async with client.stream("POST", self._endpoint(), json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise UpstreamError(
                        redact(f"OpenRouter API Error: {response.status_code} - {body[:300]}"),
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    raw = line[len("data:"):].strip()
                    if raw == "[DONE]":
                        continue
                    try:
                        event = json.loads(raw)
                    except json.JSONDecodeError:
                        continue
                    if event.get("usage"):
                        usage = dict(event["usage"])
                    choices = event.get("choices") or []
                    delta = (choices[0] or {}).get("delta") or {} if choices else {}
                    reasoning = delta.get("reasoning") or ""
                    if reasoning:
                        yield ModelChunk(type=CHUNK_REASONING, content=reasoning)
                    text = delta.get("content") or ""
                    if text:
                        content_parts.append(text)
                        yield ModelChunk(type=CHUNK_CONTENT, content=text)
        except httpx.HTTPError as exc:
            raise UpstreamError(redact(f"OpenRouter API Error: {describe_http_error(exc)}")) from exc

        try:
            decision = decode_decision("".join(content_parts))
        except ProtocolError as exc:
            log_json(logger, "provider.stream.undecodable", level=logging.WARNING, model=self._model, error=str(exc)[:300])
            yield ModelChunk(type=CHUNK_DONE, decision=None, error=str(exc))
            return
        if usage:
            decision.usage = usage
        yield ModelChunk(type=CHUNK_DONE, decision=decision)

    def _endpoint(self) -> str:
        return "/chat/completions"
