"""Concurrent execution of one decision's operations.

Every operation of a batch starts at once; results come back in input order
whatever order they complete in, and each operation is appended to the
action log exactly once after the whole batch has resolved.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from sandbox_agent.domain.contracts import TemplateGenerator, WebSearcher
from sandbox_agent.domain.errors import SandboxAgentError
from sandbox_agent.domain.operations import FILESYSTEM_KINDS, OperationResult, operation_to_dict
from sandbox_agent.execution import paths
from sandbox_agent.execution.file_ops import OperationExecutor
from sandbox_agent.observability.structured_log import log_json
from sandbox_agent.persistence.memory_store import SqliteMemoryStore
from sandbox_agent.persistence.vector_store import SqliteVectorStore
from sandbox_agent.services.indexer import SandboxIndexer

logger = logging.getLogger(__name__)

PLAN_REGISTERED_MESSAGE = "Plan registered, awaiting approval."
RECALL_MISSING_MESSAGE = "No memory found for this key."
CANCELLED_MESSAGE = "Operation cancelled."


class BatchExecutor:
    def __init__(
        self,
        executor: OperationExecutor,
        memory: SqliteMemoryStore,
        vector_store: SqliteVectorStore,
        indexer: SandboxIndexer,
        web_searcher: Optional[WebSearcher] = None,
        templates: Optional[TemplateGenerator] = None,
        semantic_search_limit: int = 5,
    ) -> None:
        self._executor = executor
        self._memory = memory
        self._vectors = vector_store
        self._indexer = indexer
        self._web = web_searcher
        self._templates = templates
        self._semantic_limit = max(1, int(semantic_search_limit))
        self._background: Set[asyncio.Task[Any]] = set()
        self._routes: Dict[str, Callable[[Any, str], Awaitable[OperationResult]]] = {
            "remember": self._remember,
            "recall": self._recall,
            "web_search": self._web_search,
            "semantic_search": self._semantic_search,
            "generate_template": self._generate_template,
            "index_files": self._index_files,
            "plan_proposal": self._plan_proposal,
        }

    async def run(
        self,
        operations: Sequence[Any],
        root: str,
        session_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[OperationResult]:
        if not operations:
            return []
        tasks = [asyncio.create_task(self._execute_one(op, root)) for op in operations]
        try:
            await self._wait(tasks, cancel_event)
        except asyncio.CancelledError:
            # Every operation is recorded even when the caller cancels mid-batch.
            try:
                await _settle(tasks)
            finally:
                self._log_batch(operations, _collect(operations, tasks), session_id)
            raise
        await _settle(tasks)
        results = _collect(operations, tasks)
        await asyncio.to_thread(self._log_batch, operations, results, session_id)
        return results

    async def wait_for_background(self) -> None:
        """Wait for detached embedding tasks (tests and shutdown)."""
        while self._background:
            pending = list(self._background)
            await asyncio.gather(*pending, return_exceptions=True)
            self._background.difference_update(pending)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.wait_for_background()
        if self._web is not None:
            await self._web.aclose()
        await self._indexer.aclose()

    @property
    def background_count(self) -> int:
        return len(self._background)

    def vector_entries(self) -> int:
        return self._vectors.count()

    async def _wait(self, tasks: List[asyncio.Task[OperationResult]], cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.wait(tasks)
            return
        if cancel_event.is_set():
            return
        waiter = asyncio.create_task(cancel_event.wait())
        pending: Set[asyncio.Task[Any]] = set(tasks)
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {waiter}, return_when=asyncio.FIRST_COMPLETED)
                if waiter in done:
                    log_json(logger, "batch.cancelled", pending=len(pending - done))
                    return
                pending -= done
        finally:
            waiter.cancel()

    def _log_batch(self, operations: Sequence[Any], results: Sequence[OperationResult], session_id: Optional[str]) -> None:
        for op, result in zip(operations, results):
            self._memory.log_action(operation_to_dict(op), result.to_dict(), session_id=session_id)

    async def _execute_one(self, op: Any, root: str) -> OperationResult:
        stale_path = _pre_resolve(op, root)
        try:
            if op.op in FILESYSTEM_KINDS:
                result = await self._executor.execute(op, root)
            else:
                result = await self._routes[op.op](op, root)
        except SandboxAgentError as exc:
            result = OperationResult.failure(op.op, str(exc), code=exc.code)
        except ValueError as exc:
            result = OperationResult.failure(op.op, str(exc), code="invalid_operation")
        except OSError as exc:
            result = OperationResult.failure(op.op, str(exc), code="io_error")
        except Exception as exc:
            logger.exception("unexpected failure in %s operation", op.op)
            result = OperationResult.failure(op.op, str(exc) or type(exc).__name__, code="internal_error")

        if not result.ok:
            log_json(logger, "operation.failed", level=logging.WARNING, op=op.op, code=result.code, error=result.error)
            return result
        if op.op == "write":
            self._spawn(self._index_written(paths.resolve(root, op.path), op.content))
        elif op.op in {"delete", "move"} and stale_path:
            await self._forget_vectors(stale_path)
        return result

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _index_written(self, path: str, content: str) -> None:
        # Fire-and-forget: the write already succeeded.
        try:
            await self._indexer.index_file(path, content)
        except Exception as exc:
            logger.warning("failed to index %s: %s", path, exc)
            log_json(logger, "index.write.failed", level=logging.WARNING, path=path, error=str(exc)[:300])

    async def _forget_vectors(self, path: str) -> None:
        try:
            await asyncio.to_thread(self._vectors.remove, path)
        except sqlite3.Error as exc:
            logger.warning("failed to drop vector entry for %s: %s", path, exc)

    async def _remember(self, op: Any, root: str) -> OperationResult:
        await asyncio.to_thread(self._memory.remember, op.key, op.value)
        return OperationResult.success("remember", key=op.key, message="Memory stored.")

    async def _recall(self, op: Any, root: str) -> OperationResult:
        value = await asyncio.to_thread(self._memory.recall, op.key)
        if value is None:
            return OperationResult.success("recall", key=op.key, found=False, message=RECALL_MISSING_MESSAGE)
        return OperationResult.success("recall", key=op.key, found=True, value=value)

    async def _web_search(self, op: Any, root: str) -> OperationResult:
        if self._web is None:
            return OperationResult.failure(
                "web_search",
                "web_search is disabled (ENABLE_WEB_SEARCH_TOOL=0).",
                code="invalid_operation",
            )
        data = await self._web.search(op.query)
        return OperationResult.success("web_search", **{**data, "query": op.query})

    async def _semantic_search(self, op: Any, root: str) -> OperationResult:
        hits = await self._vectors.search(op.query, limit=self._semantic_limit, root=root)
        results = [{"path": paths.relative_to_root(root, h.path), "score": round(h.score, 4)} for h in hits]
        return OperationResult.success("semantic_search", query=op.query, results=results)

    async def _generate_template(self, op: Any, root: str) -> OperationResult:
        if self._templates is None:
            return OperationResult.failure(
                "generate_template", "Template generation is not configured.", code="invalid_operation"
            )
        target = paths.resolve(root, op.targetDir)
        variables = dict(op.variables or {})
        variables.setdefault("target_dir", op.targetDir)
        variables.setdefault("project_name", os.path.basename(target) or "project")
        written = await asyncio.to_thread(self._templates.generate, op.templateName, target, variables)
        for path in written:
            self._spawn(self._index_written(path, _read_quietly(path)))
        return OperationResult.success(
            "generate_template",
            templateName=op.templateName,
            targetDir=op.targetDir,
            files=[paths.relative_to_root(root, p) for p in written],
        )

    async def _index_files(self, op: Any, root: str) -> OperationResult:
        stats = await self._indexer.index_tree(root, force=bool(op.force))
        return OperationResult.success("index_files", **stats)

    async def _plan_proposal(self, op: Any, root: str) -> OperationResult:
        return OperationResult.success(
            "plan_proposal",
            planName=op.planName,
            steps=list(op.steps),
            complexity=op.complexity,
            message=PLAN_REGISTERED_MESSAGE,
        )


async def _settle(tasks: List[asyncio.Task[OperationResult]]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _collect(operations: Sequence[Any], tasks: List[asyncio.Task[OperationResult]]) -> List[OperationResult]:
    results: List[OperationResult] = []
    for op, task in zip(operations, tasks):
        if not task.done() or task.cancelled():
            results.append(OperationResult.failure(op.op, CANCELLED_MESSAGE, code="cancelled"))
        elif task.exception() is not None:
            exc = task.exception()
            results.append(OperationResult.failure(op.op, str(exc) or type(exc).__name__, code="internal_error"))
        else:
            results.append(task.result())
    return results


def _pre_resolve(op: Any, root: str) -> Optional[str]:
    """Absolute path whose vector entry goes stale if ``op`` succeeds."""
    try:
        if op.op == "delete":
            return paths.find_existing(root, op.path)
        if op.op == "move":
            return paths.find_existing(root, op.from_)
    except SandboxAgentError:
        return None
    return None


def _read_quietly(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as fh:
            return fh.read()
    except OSError:
        return ""
