from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from sandbox_agent.domain.contracts import EmbeddingClient
from sandbox_agent.domain.memory import VectorEntry
from sandbox_agent.execution import paths
from sandbox_agent.observability.structured_log import log_json
from sandbox_agent.persistence.vector_store import SqliteVectorStore

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {
    ".py",
    ".md",
    ".txt",
    ".json",
    ".toml",
    ".yaml",
    ".yml",
    ".ini",
    ".cfg",
    ".sh",
    ".js",
    ".jsx",
    ".ts",
    ".tsx",
    ".html",
    ".css",
    ".sql",
    ".csv",
    ".xml",
}
SKIP_DIRS = {".git", ".venv", "venv", "__pycache__", ".mypy_cache", ".pytest_cache", "dist", "node_modules"}
EMBED_BATCH_SIZE = 16


@dataclass(frozen=True)
class _Candidate:
    path: str
    content: str
    digest: str
    mtime: float


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8", errors="replace")).hexdigest()


class SandboxIndexer:
    def __init__(
        self,
        store: SqliteVectorStore,
        embedder: EmbeddingClient,
        max_file_bytes: int = 120_000,
        max_scan_files: int = 2_000,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._max_file_bytes = max(1, int(max_file_bytes))
        self._max_scan_files = max(1, int(max_scan_files))

    async def aclose(self) -> None:
        close = getattr(self._embedder, "aclose", None)
        if close is not None:
            await close()

    async def index_file(self, path: str, content: Optional[str] = None) -> VectorEntry:
        """Embed one file and upsert its entry."""
        if content is None:
            content = await asyncio.to_thread(_read_text, path)
        mtime = await asyncio.to_thread(_mtime, path)
        vector = await self._embedder.embed(content[: self._max_file_bytes])
        entry = VectorEntry(path=path, embedding=vector, last_modified=mtime, hash=content_hash(content))
        await asyncio.to_thread(self._store.upsert, entry)
        return entry

    async def index_tree(self, root: str, force: bool = False) -> Dict[str, int]:
        root = paths.normalize_root(root)
        candidates = await asyncio.to_thread(self._collect, root)
        pending = await asyncio.to_thread(self._changed, candidates, force)
        skipped = len(candidates) - len(pending)

        indexed = 0
        for start in range(0, len(pending), EMBED_BATCH_SIZE):
            batch = pending[start:start + EMBED_BATCH_SIZE]
            vectors = await self._embedder.embed_batch([c.content for c in batch])
            entries = [
                VectorEntry(path=cand.path, embedding=vector, last_modified=cand.mtime, hash=cand.digest)
                for cand, vector in zip(batch, vectors)
            ]
            await asyncio.to_thread(self._upsert_all, entries)
            indexed += len(entries)

        removed = await asyncio.to_thread(self._remove_stale, root, {c.path for c in candidates})
        stats = {"total": len(candidates), "indexed": indexed, "skipped": skipped, "removed": removed}
        log_json(logger, "index.tree.completed", root=root, **stats)
        return stats

    def _changed(self, candidates: List[_Candidate], force: bool) -> List[_Candidate]:
        if force:
            return list(candidates)
        pending: List[_Candidate] = []
        for cand in candidates:
            existing = self._store.get(cand.path)
            if existing is None or existing.hash != cand.digest:
                pending.append(cand)
        return pending

    def _upsert_all(self, entries: List[VectorEntry]) -> None:
        for entry in entries:
            self._store.upsert(entry)

    def _remove_stale(self, root: str, seen: Set[str]) -> int:
        removed = 0
        for stale in self._store.list_paths(root):
            if stale not in seen:
                removed += self._store.remove(stale)
        return removed

    def _collect(self, root: str) -> List[_Candidate]:
        out: List[_Candidate] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for name in sorted(filenames):
                if len(out) >= self._max_scan_files:
                    return out
                if os.path.splitext(name)[1].lower() not in TEXT_EXTENSIONS:
                    continue
                full = os.path.join(dirpath, name)
                try:
                    stat = os.stat(full)
                    if stat.st_size > self._max_file_bytes:
                        continue
                    content = _read_text(full)
                except OSError as exc:
                    logger.warning("skipping unreadable file %s: %s", full, exc)
                    continue
                if not content.strip():
                    continue
                out.append(_Candidate(path=full, content=content, digest=content_hash(content), mtime=stat.st_mtime))
        return out


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="ignore") as fh:
        return fh.read()


def _mtime(path: str) -> float:
    try:
        return os.stat(path).st_mtime
    except OSError:
        return 0.0
