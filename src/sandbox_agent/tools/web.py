from __future__ import annotations

import os
import re
import urllib.parse
from typing import Any, Dict, List, Mapping, Optional

import httpx

from sandbox_agent.domain.errors import UpstreamError
from sandbox_agent.providers.transport import build_httpx_client, describe_http_error, request_with_retries, status_code_of

DUCKDUCKGO_API_URL = "https://api.duckduckgo.com/"
WTTR_URL = "https://wttr.in/"
DEFAULT_RESULT_LIMIT = 5

_WEATHER_FILLER_RE = re.compile(r"\b(?:weather|in|for|today|realtime)\b", re.IGNORECASE)


def web_search_tool_enabled(env: Optional[Mapping[str, str]] = None) -> bool:
    source = env if env is not None else os.environ
    raw = str(source.get("ENABLE_WEB_SEARCH_TOOL", "1") or "1").strip().lower()
    return raw not in {"0", "false", "no", "off"}


def is_weather_query(query: str) -> bool:
    return "weather" in (query or "").lower()


def weather_location(query: str) -> str:
    """"weather in Paris today" -> "Paris"."""
    cleaned = _WEATHER_FILLER_RE.sub(" ", query or "")
    return " ".join(cleaned.split())


def _flatten_related_topics(raw: Any) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if isinstance(item, dict) and isinstance(item.get("Topics"), list):
            out.extend(_flatten_related_topics(item.get("Topics")))
            continue
        if not isinstance(item, dict):
            continue
        text = str(item.get("Text") or "").strip()
        url = str(item.get("FirstURL") or "").strip()
        if text or url:
            out.append({"title": text.split(" - ", 1)[0].strip() or text, "url": url, "snippet": text})
    return out


def normalize_results(payload: Dict[str, Any], limit: int = DEFAULT_RESULT_LIMIT) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    abstract = str(payload.get("AbstractText") or "").strip()
    abstract_url = str(payload.get("AbstractURL") or "").strip()
    heading = str(payload.get("Heading") or "").strip()
    if abstract and abstract_url:
        rows.append({"title": heading or "DuckDuckGo Instant Answer", "url": abstract_url, "snippet": abstract})
    answer = str(payload.get("Answer") or "").strip()
    if answer:
        rows.append({"title": "Answer", "url": "", "snippet": answer})
    rows.extend(r for r in _flatten_related_topics(payload.get("RelatedTopics")) if r.get("url"))
    out: List[Dict[str, str]] = []
    seen = set()
    for row in rows:
        key = (row.get("url") or row.get("snippet") or "").strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        snippet = row.get("snippet") or ""
        if len(snippet) > 240:
            row = {**row, "snippet": snippet[:240].rstrip() + "..."}
        out.append(row)
        if len(out) >= limit:
            break
    return out


class WebSearcher:
    """Weather lookups go to wttr.in, everything else to DuckDuckGo instant answers."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_sec: float = 15.0,
        result_limit: int = DEFAULT_RESULT_LIMIT,
    ) -> None:
        self._client = client
        self._timeout_sec = timeout_sec
        self._result_limit = max(1, int(result_limit))

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = build_httpx_client(
                headers={"User-Agent": "sandbox-agent-web-search/1.0"},
                read_timeout_sec=self._timeout_sec,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str) -> Dict[str, Any]:
        query = (query or "").strip()
        if not query:
            raise ValueError("query is required.")
        if is_weather_query(query):
            return await self._weather(query)
        return await self._general(query)

    async def _weather(self, query: str) -> Dict[str, Any]:
        location = weather_location(query)
        url = WTTR_URL + urllib.parse.quote(location)
        try:
            resp = await request_with_retries(self._get_client(), "GET", url, params={"format": "3"}, attempts=2)
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"Failed to fetch weather: {describe_http_error(exc)}",
                status_code=status_code_of(exc),
            ) from exc
        return {"type": "weather", "query": query, "location": location, "data": resp.text.strip()}

    async def _general(self, query: str) -> Dict[str, Any]:
        params = {
            "q": query,
            "format": "json",
            "no_html": "1",
            "skip_disambig": "1",
            "no_redirect": "1",
        }
        try:
            resp = await request_with_retries(self._get_client(), "GET", DUCKDUCKGO_API_URL, params=params, attempts=2)
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamError(
                f"Web search failed: {describe_http_error(exc)}",
                status_code=status_code_of(exc),
            ) from exc
        results = normalize_results(payload if isinstance(payload, dict) else {}, limit=self._result_limit)
        return {"type": "general", "query": query, "source": "duckduckgo", "results": results}
