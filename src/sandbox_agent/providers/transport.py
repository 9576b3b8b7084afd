from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, Optional

import httpx

TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


def build_httpx_client(
    *,
    base_url: str = "",
    headers: Optional[Dict[str, str]] = None,
    connect_timeout_sec: float = 10.0,
    read_timeout_sec: float = 60.0,
    max_connections: int = 30,
    max_keepalive_connections: int = 10,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    timeout = httpx.Timeout(connect=connect_timeout_sec, read=read_timeout_sec, write=read_timeout_sec, pool=5.0)
    limits = httpx.Limits(
        max_connections=max(1, int(max_connections)),
        max_keepalive_connections=max(1, int(max_keepalive_connections)),
    )
    return httpx.AsyncClient(
        base_url=base_url,
        headers=headers or {},
        timeout=timeout,
        limits=limits,
        transport=transport,
    )


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    json: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    attempts: int = 3,
    base_backoff_sec: float = 0.5,
) -> httpx.Response:
    """Send one request, retrying transient statuses and network errors.

    The final response is returned only when it is a success; otherwise
    ``httpx.HTTPStatusError`` (or the last transport error) propagates.
    """
    max_attempts = max(1, int(attempts))
    for idx in range(max_attempts):
        last_try = idx + 1 >= max_attempts
        try:
            resp = await client.request(method, url, json=json, params=params, headers=headers)
        except httpx.TransportError:
            if last_try:
                raise
            await _sleep_backoff(idx, base_backoff_sec)
            continue
        if resp.status_code in TRANSIENT_STATUS_CODES and not last_try:
            await _sleep_backoff(idx, base_backoff_sec)
            continue
        resp.raise_for_status()
        return resp
    raise RuntimeError("request_with_retries exhausted without result")


async def post_json_with_retries(
    client: httpx.AsyncClient,
    *,
    path: str,
    payload: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    attempts: int = 3,
    base_backoff_sec: float = 0.5,
) -> httpx.Response:
    return await request_with_retries(
        client,
        "POST",
        path,
        json=payload,
        headers=headers,
        attempts=attempts,
        base_backoff_sec=base_backoff_sec,
    )


def describe_http_error(exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        body = (exc.response.text or "").strip()
        if len(body) > 300:
            body = body[:300] + "..."
        return f"HTTP {exc.response.status_code}: {body}" if body else f"HTTP {exc.response.status_code}"
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__


def status_code_of(exc: Exception) -> int:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return 0


async def _sleep_backoff(attempt_idx: int, base_backoff_sec: float) -> None:
    # bounded exponential backoff with jitter
    delay = min(8.0, max(0.0, float(base_backoff_sec)) * (2 ** attempt_idx))
    delay = delay * (0.8 + random.random() * 0.4)
    await asyncio.sleep(delay)
