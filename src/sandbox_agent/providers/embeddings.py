from __future__ import annotations

import hashlib
import math
import os
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from sandbox_agent.domain.errors import UpstreamError
from sandbox_agent.providers.transport import (
    build_httpx_client,
    describe_http_error,
    post_json_with_retries,
    status_code_of,
)
from sandbox_agent.util import redact

DEFAULT_EMBEDDING_URL = "https://router.huggingface.co/nebius/v1/embeddings"
DEFAULT_EMBEDDING_MODEL = "Qwen/Qwen3-Embedding-8B"
HASHING_DIMENSIONS = 256

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class HuggingFaceEmbeddingClient:
    """OpenAI-style embeddings endpoint on the Hugging Face inference router."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        url: Optional[str] = None,
        timeout_sec: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = (api_key or os.environ.get("HF_TOKEN") or "").strip()
        self._model = (model or os.environ.get("EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL).strip()
        self._url = (url or os.environ.get("EMBEDDING_URL") or DEFAULT_EMBEDDING_URL).strip()
        self._timeout_sec = timeout_sec
        self._client = client

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> List[float]:
        vectors = await self._request(text)
        if not vectors or not vectors[0]:
            raise UpstreamError("Hugging Face returned empty embedding.")
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors = await self._request(list(texts))
        if len(vectors) != len(texts):
            raise UpstreamError(
                f"Hugging Face returned {len(vectors)} embeddings for {len(texts)} inputs."
            )
        return vectors

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, payload_input: Any) -> List[List[float]]:
        if not self._api_key:
            raise UpstreamError("HF_TOKEN is not set in environment variables.")
        if self._client is None:
            self._client = build_httpx_client(read_timeout_sec=self._timeout_sec)
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = await post_json_with_retries(
                self._client,
                path=self._url,
                payload={"model": self._model, "input": payload_input},
                headers=headers,
            )
            data: Dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamError(
                redact(f"Hugging Face API Error: {describe_http_error(exc)}"),
                status_code=status_code_of(exc),
            ) from exc
        items = data.get("data") or []
        return [[float(x) for x in (item or {}).get("embedding") or []] for item in items]


class HashingEmbeddingClient:
    """Offline fallback: signed feature hashing over word tokens.

    Vectors are L2-normalised so cosine similarity reduces to token overlap.
    Good enough for local runs and tests; no semantic generalisation.
    """

    def __init__(self, dimensions: int = HASHING_DIMENSIONS) -> None:
        self._dimensions = max(8, int(dimensions))

    @property
    def model(self) -> str:
        return f"hashing-{self._dimensions}"

    async def embed(self, text: str) -> List[float]:
        return hash_embedding(text, self._dimensions)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        return [hash_embedding(t, self._dimensions) for t in texts]


def hash_embedding(text: str, dimensions: int = HASHING_DIMENSIONS) -> List[float]:
    vector = [0.0] * dimensions
    for token in _TOKEN_RE.findall((text or "").lower()):
        digest = hashlib.sha1(token.encode("utf-8")).digest()
        idx = int.from_bytes(digest[:4], "big") % dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        vector[idx] += sign
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        return vector
    return [v / norm for v in vector]
