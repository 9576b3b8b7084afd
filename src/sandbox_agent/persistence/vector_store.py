"""Brute-force cosine index of sandbox file embeddings, keyed by absolute path."""
from __future__ import annotations

import asyncio
import json
import math
import os
import sqlite3
import threading
from pathlib import Path
from typing import Any, List, Optional, Sequence

from sandbox_agent.domain.contracts import EmbeddingClient
from sandbox_agent.domain.memory import SearchHit, VectorEntry
from sandbox_agent.execution import paths


class SqliteVectorStore:
    def __init__(self, db_path: Path, embedder: Optional[EmbeddingClient] = None):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._embedder = embedder
        self._lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vectors (
                    path TEXT PRIMARY KEY,
                    embedding TEXT NOT NULL,
                    last_modified REAL NOT NULL,
                    content_hash TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
                """
            )

    def upsert(self, entry: VectorEntry) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO vectors (path, embedding, last_modified, content_hash, metadata)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    embedding = excluded.embedding,
                    last_modified = excluded.last_modified,
                    content_hash = excluded.content_hash,
                    metadata = excluded.metadata
                """,
                (
                    entry.path,
                    json.dumps([float(x) for x in entry.embedding]),
                    float(entry.last_modified),
                    entry.hash,
                    json.dumps(entry.metadata or {}, default=str),
                ),
            )

    def get(self, path: str) -> Optional[VectorEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT path, embedding, last_modified, content_hash, metadata FROM vectors WHERE path = ?",
                (path,),
            ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def remove(self, path: str) -> int:
        """Remove the entry for ``path`` and, for directories, everything below it."""
        prefix = path.rstrip(os.sep) + os.sep
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM vectors WHERE path = ? OR substr(path, 1, ?) = ?",
                (path, len(prefix), prefix),
            )
        return cur.rowcount

    def clear(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM vectors")

    def count(self) -> int:
        with self._connect() as conn:
            return int(conn.execute("SELECT COUNT(*) AS c FROM vectors").fetchone()["c"])

    def list_paths(self, root: Optional[str] = None) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT path FROM vectors ORDER BY path").fetchall()
        out = [row["path"] for row in rows]
        if root:
            base = paths.normalize_root(root)
            out = [p for p in out if paths.is_within(base, p)]
        return out

    def search_by_vector(
        self,
        vector: Sequence[float],
        limit: int = 5,
        root: Optional[str] = None,
    ) -> List[SearchHit]:
        base = paths.normalize_root(root) if root else ""
        with self._connect() as conn:
            rows = conn.execute("SELECT path, embedding FROM vectors").fetchall()
        hits: List[SearchHit] = []
        for row in rows:
            if base and not paths.is_within(base, row["path"]):
                continue
            score = cosine_similarity(vector, json.loads(row["embedding"]))
            hits.append(SearchHit(path=row["path"], score=score))
        hits.sort(key=lambda h: (-h.score, h.path))
        return hits[: max(0, int(limit))]

    async def search(self, query: str, limit: int = 5, root: Optional[str] = None) -> List[SearchHit]:
        if self._embedder is None:
            raise RuntimeError("Vector store has no embedding client configured.")
        vector = await self._embedder.embed(query)
        return await asyncio.to_thread(self.search_by_vector, vector, limit, root)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(float(x) * float(y) for x, y in zip(a, b))
    norm_a = math.sqrt(sum(float(x) * float(x) for x in a))
    norm_b = math.sqrt(sum(float(y) * float(y) for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _row_to_entry(row: Any) -> VectorEntry:
    return VectorEntry(
        path=row["path"],
        embedding=[float(x) for x in json.loads(row["embedding"])],
        last_modified=float(row["last_modified"]),
        hash=row["content_hash"],
        metadata=json.loads(row["metadata"] or "{}"),
    )
