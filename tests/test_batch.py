import asyncio
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from pydantic import TypeAdapter

from sandbox_agent.domain.errors import UpstreamError
from sandbox_agent.domain.operations import Operation, OperationResult
from sandbox_agent.execution.file_ops import OperationExecutor
from sandbox_agent.persistence.memory_store import SqliteMemoryStore
from sandbox_agent.persistence.vector_store import SqliteVectorStore
from sandbox_agent.providers.embeddings import HashingEmbeddingClient
from sandbox_agent.services.batch import BatchExecutor
from sandbox_agent.services.indexer import SandboxIndexer
from sandbox_agent.tools.templates import ScaffoldGenerator

_OPERATION = TypeAdapter(Operation)


class _FakeWeb:
    def __init__(self):
        self.queries = []

    async def search(self, query):
        self.queries.append(query)
        return {"type": "general", "query": query, "source": "duckduckgo", "results": []}

    async def aclose(self):
        pass


class _FailingEmbedder(HashingEmbeddingClient):
    async def embed(self, text):
        raise UpstreamError("Hugging Face API Error: HTTP 503")


def _ops(*items):
    return [_OPERATION.validate_python(item) for item in items]


class BatchTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = os.path.join(self._tmp.name, "sandbox")
        os.makedirs(self.root)
        self.memory = SqliteMemoryStore(Path(self._tmp.name) / "memory.db")
        self.embedder = HashingEmbeddingClient(32)
        self.vectors = SqliteVectorStore(Path(self._tmp.name) / "vectors.db", embedder=self.embedder)
        self.indexer = SandboxIndexer(self.vectors, self.embedder)
        self.web = _FakeWeb()
        self.batch = BatchExecutor(
            executor=OperationExecutor(delete_retry_delay_sec=0),
            memory=self.memory,
            vector_store=self.vectors,
            indexer=self.indexer,
            web_searcher=self.web,
            templates=ScaffoldGenerator(),
        )

    async def asyncTearDown(self):
        await self.batch.aclose()

    def tearDown(self):
        self._tmp.cleanup()


class TestBatchExecutor(BatchTestCase):
    async def test_results_keep_input_order(self):
        operations = _ops(
            {"op": "write", "path": "a.txt", "content": "A"},
            {"op": "mkdir", "path": "docs"},
            {"op": "read", "path": "missing.txt"},
            {"op": "remember", "key": "k", "value": "v"},
        )
        results = await self.batch.run(operations, self.root)
        self.assertEqual([r.op for r in results], ["write", "mkdir", "read", "remember"])
        self.assertEqual([r.ok for r in results], [True, True, False, True])
        self.assertEqual(results[2].code, "not_found")

    async def test_order_is_preserved_when_completion_order_differs(self):
        original = OperationExecutor.execute

        async def slow_first(executor, op, root):
            if getattr(op, "path", "") == "slow":
                await asyncio.sleep(0.05)
            return await original(executor, op, root)

        with mock.patch.object(OperationExecutor, "execute", slow_first):
            results = await self.batch.run(
                _ops({"op": "mkdir", "path": "slow"}, {"op": "mkdir", "path": "fast"}),
                self.root,
            )
        self.assertEqual([r.payload["path"] for r in results], ["slow", "fast"])

    async def test_each_operation_is_logged_once(self):
        operations = _ops(
            {"op": "mkdir", "path": "x"},
            {"op": "delete", "path": "nothing-here"},
        )
        await self.batch.run(operations, self.root, session_id="s1")
        actions = self.memory.get_recent_actions(limit=10)
        self.assertEqual([a.operation["op"] for a in actions], ["mkdir", "delete"])
        self.assertEqual(actions[1].result["status"], "error")
        self.assertEqual(actions[0].session_id, "s1")

    async def test_empty_batch(self):
        self.assertEqual(await self.batch.run([], self.root), [])
        self.assertEqual(self.memory.count_actions(), 0)

    async def test_remember_and_recall(self):
        await self.batch.run(_ops({"op": "remember", "key": "lang", "value": "Python"}), self.root)
        found, missing = await self.batch.run(
            _ops({"op": "recall", "key": "lang"}, {"op": "recall", "key": "nope"}),
            self.root,
        )
        self.assertEqual(found.payload["value"], "Python")
        self.assertTrue(found.payload["found"])
        self.assertTrue(missing.ok)
        self.assertFalse(missing.payload["found"])
        self.assertEqual(missing.payload["message"], "No memory found for this key.")

    async def test_web_search_route_and_disabled(self):
        (result,) = await self.batch.run(_ops({"op": "web_search", "query": "fastapi"}), self.root)
        self.assertTrue(result.ok)
        self.assertEqual(self.web.queries, ["fastapi"])

        disabled = BatchExecutor(OperationExecutor(), self.memory, self.vectors, self.indexer)
        (result,) = await disabled.run(_ops({"op": "web_search", "query": "fastapi"}), self.root)
        self.assertEqual(result.code, "invalid_operation")
        self.assertIn("disabled", result.error)

    async def test_write_is_indexed_in_background(self):
        await self.batch.run(
            _ops({"op": "write", "path": "notes/tax.txt", "content": "tax return receipt"}),
            self.root,
        )
        await self.batch.wait_for_background()
        self.assertEqual(self.batch.background_count, 0)
        target = os.path.join(self.root, "notes", "tax.txt")
        self.assertIsNotNone(self.vectors.get(target))

        (search,) = await self.batch.run(_ops({"op": "semantic_search", "query": "tax receipt"}), self.root)
        self.assertEqual(search.payload["results"][0]["path"], "notes/tax.txt")

    async def test_embedding_failure_does_not_fail_the_write(self):
        indexer = SandboxIndexer(self.vectors, _FailingEmbedder(32))
        batch = BatchExecutor(OperationExecutor(), self.memory, self.vectors, indexer)
        with self.assertLogs("sandbox_agent.services.batch", level="WARNING"):
            (result,) = await batch.run(_ops({"op": "write", "path": "a.txt", "content": "x"}), self.root)
            await batch.wait_for_background()
        self.assertTrue(result.ok)
        self.assertTrue(os.path.exists(os.path.join(self.root, "a.txt")))
        self.assertEqual(self.vectors.count(), 0)

    async def test_delete_and_move_drop_vector_entries(self):
        await self.batch.run(
            _ops(
                {"op": "write", "path": "a.txt", "content": "alpha"},
                {"op": "write", "path": "b.txt", "content": "beta"},
            ),
            self.root,
        )
        await self.batch.wait_for_background()
        self.assertEqual(self.vectors.count(), 2)
        await self.batch.run(
            _ops({"op": "delete", "path": "a.txt"}, {"op": "move", "from": "b.txt", "to": "c.txt"}),
            self.root,
        )
        self.assertEqual(self.vectors.count(), 0)

    async def test_generate_template_and_index_files(self):
        (result,) = await self.batch.run(
            _ops({"op": "generate_template", "templateName": "static-site", "targetDir": "site"}),
            self.root,
        )
        self.assertTrue(result.ok)
        self.assertEqual(sorted(result.payload["files"]), ["site/index.html", "site/script.js", "site/styles.css"])
        await self.batch.wait_for_background()

        (stats,) = await self.batch.run(_ops({"op": "index_files"}), self.root)
        self.assertEqual(stats.payload["total"], 3)
        self.assertEqual(stats.payload["skipped"], 3)

        (bad,) = await self.batch.run(
            _ops({"op": "generate_template", "templateName": "nope", "targetDir": "x"}),
            self.root,
        )
        self.assertEqual(bad.code, "not_found")

    async def test_plan_proposal(self):
        (result,) = await self.batch.run(
            _ops({"op": "plan_proposal", "planName": "Site", "steps": ["a", "b"], "complexity": "low"}),
            self.root,
        )
        self.assertEqual(result.payload["message"], "Plan registered, awaiting approval.")
        self.assertEqual(result.payload["steps"], ["a", "b"])

    async def test_unexpected_exception_becomes_internal_error(self):
        with mock.patch.object(OperationExecutor, "execute", side_effect=RuntimeError("kaboom")):
            with self.assertLogs("sandbox_agent.services.batch", level="ERROR"):
                (result,) = await self.batch.run(_ops({"op": "mkdir", "path": "x"}), self.root)
        self.assertEqual(result.code, "internal_error")
        self.assertEqual(result.error, "kaboom")

    async def test_cancel_event_cancels_pending_operations(self):
        cancel = asyncio.Event()
        original = OperationExecutor.execute

        async def hang_on_slow(executor, op, root):
            if getattr(op, "path", "") == "slow":
                await asyncio.sleep(10)
            return await original(executor, op, root)

        async def trip():
            await asyncio.sleep(0.05)
            cancel.set()

        with mock.patch.object(OperationExecutor, "execute", hang_on_slow):
            tripper = asyncio.create_task(trip())
            results = await self.batch.run(
                _ops({"op": "mkdir", "path": "fast"}, {"op": "mkdir", "path": "slow"}),
                self.root,
                cancel_event=cancel,
            )
            await tripper
        self.assertTrue(results[0].ok)
        self.assertEqual(results[1].code, "cancelled")
        self.assertEqual(results[1].error, "Operation cancelled.")
        self.assertEqual(self.memory.count_actions(), 2)

    async def test_cancelling_the_batch_still_logs_every_operation(self):
        started = asyncio.Event()

        async def slow_search(query):
            started.set()
            await asyncio.sleep(10)

        self.web.search = slow_search
        running = asyncio.create_task(
            self.batch.run(
                _ops({"op": "write", "path": "a.txt", "content": "kept"}, {"op": "web_search", "query": "slow"}),
                self.root,
                session_id="s1",
            )
        )
        await started.wait()
        target = os.path.join(self.root, "a.txt")
        for _ in range(200):
            if os.path.exists(target):
                break
            await asyncio.sleep(0.01)
        running.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await running

        self.assertTrue(os.path.exists(target))
        self.assertEqual(self.memory.count_actions(), 2)
        entries = self.memory.get_recent_actions(limit=10, session_id="s1")
        self.assertEqual([e.operation["op"] for e in entries], ["write", "web_search"])
        self.assertEqual(entries[1].result["code"], "cancelled")

    async def test_result_type(self):
        (result,) = await self.batch.run(_ops({"op": "mkdir", "path": "d"}), self.root)
        self.assertIsInstance(result, OperationResult)
