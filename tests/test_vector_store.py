import asyncio
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from sandbox_agent.domain.memory import VectorEntry
from sandbox_agent.persistence.vector_store import SqliteVectorStore, cosine_similarity
from sandbox_agent.providers.embeddings import HashingEmbeddingClient


class TestCosineSimilarity(unittest.TestCase):
    def test_edge_cases(self):
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [1.0, 0.0]), 1.0)
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [0.0, 1.0]), 0.0)
        self.assertEqual(cosine_similarity([0.0, 0.0], [1.0, 1.0]), 0.0)
        self.assertEqual(cosine_similarity([1.0], [1.0, 2.0]), 0.0)
        self.assertEqual(cosine_similarity([], []), 0.0)


class TestSqliteVectorStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = os.path.join(self._tmp.name, "sandbox")
        os.makedirs(self.root)
        self.store = SqliteVectorStore(Path(self._tmp.name) / "vectors.db", embedder=HashingEmbeddingClient(64))

    def tearDown(self):
        self._tmp.cleanup()

    def _path(self, rel):
        return os.path.join(self.root, rel)

    def test_upsert_replaces_entry(self):
        self.store.upsert(VectorEntry(self._path("a.txt"), [1.0, 0.0], 1.0, hash="h1"))
        self.store.upsert(VectorEntry(self._path("a.txt"), [0.0, 1.0], 2.0, hash="h2", metadata={"size": 3}))
        entry = self.store.get(self._path("a.txt"))
        self.assertEqual(entry.embedding, [0.0, 1.0])
        self.assertEqual(entry.hash, "h2")
        self.assertEqual(entry.metadata, {"size": 3})
        self.assertEqual(self.store.count(), 1)

    def test_search_by_vector_orders_by_score(self):
        self.store.upsert(VectorEntry(self._path("x.txt"), [1.0, 0.0], 1.0))
        self.store.upsert(VectorEntry(self._path("y.txt"), [0.7, 0.7], 1.0))
        self.store.upsert(VectorEntry(self._path("z.txt"), [0.0, 1.0], 1.0))
        hits = self.store.search_by_vector([1.0, 0.1], limit=2)
        self.assertEqual([os.path.basename(h.path) for h in hits], ["x.txt", "y.txt"])
        self.assertGreater(hits[0].score, hits[1].score)

    def test_search_is_scoped_to_root(self):
        outside = os.path.join(self._tmp.name, "other", "o.txt")
        self.store.upsert(VectorEntry(outside, [1.0, 0.0], 1.0))
        self.store.upsert(VectorEntry(self._path("in.txt"), [1.0, 0.0], 1.0))
        hits = self.store.search_by_vector([1.0, 0.0], limit=5, root=self.root)
        self.assertEqual([h.path for h in hits], [self._path("in.txt")])
        self.assertEqual(self.store.list_paths(root=self.root), [self._path("in.txt")])

    def test_remove_directory_prefix(self):
        self.store.upsert(VectorEntry(self._path("docs/a.md"), [1.0], 1.0))
        self.store.upsert(VectorEntry(self._path("docs/sub/b.md"), [1.0], 1.0))
        self.store.upsert(VectorEntry(self._path("docs-old/c.md"), [1.0], 1.0))
        removed = self.store.remove(self._path("docs"))
        self.assertEqual(removed, 2)
        self.assertEqual(self.store.list_paths(), [self._path("docs-old/c.md")])

    def test_clear(self):
        self.store.upsert(VectorEntry(self._path("a"), [1.0], 1.0))
        self.store.clear()
        self.assertEqual(self.store.count(), 0)
        self.assertIsNone(self.store.get(self._path("a")))

    async def test_search_round_trip_finds_own_content(self):
        embedder = HashingEmbeddingClient(64)
        docs = {
            "recipes.txt": "pasta tomato basil garlic olive oil recipe",
            "taxes.txt": "invoice receipt tax return deduction accountant",
        }
        for name, text in docs.items():
            self.store.upsert(VectorEntry(self._path(name), await embedder.embed(text), 1.0))
        hits = await self.store.search("tax return receipt", limit=1, root=self.root)
        self.assertEqual(os.path.basename(hits[0].path), "taxes.txt")

    async def test_search_without_embedder(self):
        store = SqliteVectorStore(Path(self._tmp.name) / "bare.db")
        with self.assertRaises(RuntimeError):
            await store.search("anything")

    async def test_search_scoring_does_not_block_the_event_loop(self):
        self.store.upsert(VectorEntry(self._path("a.txt"), await HashingEmbeddingClient(64).embed("hello"), 1.0))
        scoring = self.store.search_by_vector

        def slow_scoring(*args, **kwargs):
            time.sleep(0.2)
            return scoring(*args, **kwargs)

        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.005)
                ticks += 1

        ticking = asyncio.create_task(ticker())
        try:
            with mock.patch.object(self.store, "search_by_vector", side_effect=slow_scoring):
                hits = await self.store.search("hello", limit=1)
        finally:
            ticking.cancel()
        self.assertEqual(os.path.basename(hits[0].path), "a.txt")
        self.assertGreater(ticks, 0)
