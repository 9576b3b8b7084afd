import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from pydantic import TypeAdapter

from sandbox_agent.domain.operations import Operation
from sandbox_agent.execution.file_ops import OperationExecutor, filter_names, normalize_extensions

_OPERATION = TypeAdapter(Operation)


class TestOperationExecutor(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        self.executor = OperationExecutor(delete_retry_attempts=2, delete_retry_delay_sec=0)

    def tearDown(self):
        self._tmp.cleanup()

    async def _run(self, **op):
        return await self.executor.execute(_OPERATION.validate_python(op), self.root)

    async def test_write_creates_parent_directories(self):
        result = await self._run(op="write", path="a/b/c.txt", content="hello")
        self.assertTrue(result.ok)
        self.assertEqual((Path(self.root) / "a/b/c.txt").read_text(encoding="utf-8"), "hello")

    async def test_write_is_idempotent(self):
        await self._run(op="write", path="x.txt", content="same")
        result = await self._run(op="write", path="x.txt", content="same")
        self.assertTrue(result.ok)
        self.assertEqual((Path(self.root) / "x.txt").read_text(encoding="utf-8"), "same")

    async def test_write_outside_root_is_a_sandbox_violation(self):
        result = await self._run(op="write", path="../escape.txt", content="x")
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "sandbox_violation")
        self.assertFalse((Path(self.root).parent / "escape.txt").exists())

    async def test_read_returns_content_and_not_found(self):
        (Path(self.root) / "r.txt").write_text("data", encoding="utf-8")
        ok = await self._run(op="read", path="r.txt")
        self.assertEqual(ok.payload["content"], "data")
        missing = await self._run(op="read", path="nope.txt")
        self.assertEqual(missing.code, "not_found")
        self.assertEqual(missing.error, "File not found: nope.txt")

    async def test_read_finds_file_written_with_other_quote_style(self):
        written = await self._run(op="write", path="notes/caf\u00e9's notes.txt", content="espresso list")
        self.assertTrue(written.ok)
        for variant in ("caf\u00e9\u2019s notes.txt", "caf\u00e9\u2018s notes.txt", "caf\u00e9`s notes.txt"):
            result = await self._run(op="read", path=f"notes/{variant}")
            self.assertTrue(result.ok, variant)
            self.assertEqual(result.payload["content"], "espresso list")
        self.assertEqual(os.listdir(Path(self.root) / "notes"), ["caf\u00e9's notes.txt"])

    async def test_mkdir_twice_succeeds(self):
        self.assertTrue((await self._run(op="mkdir", path="d/e")).ok)
        self.assertTrue((await self._run(op="mkdir", path="d/e")).ok)
        self.assertTrue((Path(self.root) / "d/e").is_dir())

    async def test_delete_file_and_directory(self):
        (Path(self.root) / "f.txt").write_text("x", encoding="utf-8")
        (Path(self.root) / "dir/sub").mkdir(parents=True)
        self.assertTrue((await self._run(op="delete", path="f.txt")).ok)
        self.assertTrue((await self._run(op="delete", path="dir")).ok)
        self.assertEqual(os.listdir(self.root), [])

    async def test_delete_missing_and_root(self):
        missing = await self._run(op="delete", path="ghost.txt")
        self.assertEqual(missing.code, "not_found")
        root = await self._run(op="delete", path=".")
        self.assertEqual(root.code, "sandbox_violation")
        self.assertTrue(os.path.isdir(self.root))

    async def test_delete_matches_quote_variant(self):
        (Path(self.root) / "it’s.txt").write_text("x", encoding="utf-8")
        result = await self._run(op="delete", path="it's.txt")
        self.assertTrue(result.ok)
        self.assertEqual(os.listdir(self.root), [])

    async def test_delete_retries_busy_resource(self):
        (Path(self.root) / "busy.txt").write_text("x", encoding="utf-8")
        busy = OSError(errno.EBUSY, "Device or resource busy")
        with mock.patch(
            "sandbox_agent.execution.file_ops._remove_path",
            side_effect=[busy, busy, None],
        ) as remove:
            result = await self._run(op="delete", path="busy.txt")
        self.assertTrue(result.ok)
        self.assertEqual(remove.call_count, 3)

    async def test_delete_gives_up_after_retries(self):
        (Path(self.root) / "busy.txt").write_text("x", encoding="utf-8")
        busy = OSError(errno.EBUSY, "Device or resource busy")
        with mock.patch("sandbox_agent.execution.file_ops._remove_path", side_effect=busy) as remove:
            result = await self._run(op="delete", path="busy.txt")
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "resource_busy")
        self.assertIn("Resource busy", result.error)
        self.assertEqual(remove.call_count, 3)

    async def test_delete_does_not_retry_other_errors(self):
        (Path(self.root) / "locked.txt").write_text("x", encoding="utf-8")
        denied = OSError(errno.EACCES, "Permission denied", "locked.txt")
        with mock.patch("sandbox_agent.execution.file_ops._remove_path", side_effect=denied) as remove:
            result = await self._run(op="delete", path="locked.txt")
        self.assertEqual(result.code, "io_error")
        self.assertEqual(remove.call_count, 1)

    async def test_move_and_copy(self):
        (Path(self.root) / "a.txt").write_text("A", encoding="utf-8")
        copied = await self._run(op="copy", **{"from": "a.txt", "to": "backup/a.txt"})
        self.assertTrue(copied.ok)
        self.assertEqual(copied.payload, {"from": "a.txt", "to": "backup/a.txt"})
        moved = await self._run(op="move", **{"from": "a.txt", "to": "moved/a.txt"})
        self.assertTrue(moved.ok)
        self.assertFalse((Path(self.root) / "a.txt").exists())
        self.assertEqual((Path(self.root) / "moved/a.txt").read_text(encoding="utf-8"), "A")
        self.assertEqual((Path(self.root) / "backup/a.txt").read_text(encoding="utf-8"), "A")

    async def test_move_overwrites_destination(self):
        (Path(self.root) / "new.txt").write_text("new", encoding="utf-8")
        (Path(self.root) / "old.txt").write_text("old", encoding="utf-8")
        result = await self._run(op="move", **{"from": "new.txt", "to": "old.txt"})
        self.assertTrue(result.ok)
        self.assertEqual((Path(self.root) / "old.txt").read_text(encoding="utf-8"), "new")

    async def test_copy_directory_into_itself_is_rejected(self):
        (Path(self.root) / "src").mkdir()
        result = await self._run(op="copy", **{"from": "src", "to": "src/inner"})
        self.assertFalse(result.ok)
        self.assertIn("inside itself", result.error)

    async def test_move_missing_source(self):
        result = await self._run(op="move", **{"from": "none.txt", "to": "b.txt"})
        self.assertEqual(result.code, "not_found")

    async def test_list_with_pattern(self):
        for name in ("b.TXT", "a.txt", "c.md"):
            (Path(self.root) / name).write_text("", encoding="utf-8")
        everything = await self._run(op="list", path=".")
        self.assertEqual(everything.payload["files"], ["a.txt", "b.TXT", "c.md"])
        text_only = await self._run(op="list", path=".", pattern="*.txt")
        self.assertEqual(text_only.payload["files"], ["a.txt", "b.TXT"])
        missing = await self._run(op="list", path="nowhere")
        self.assertEqual(missing.code, "not_found")

    async def test_move_all_moves_matching_extensions(self):
        inbox = Path(self.root) / "inbox"
        inbox.mkdir()
        for name in ("a.JPG", "b.png", "c.txt", "noext"):
            (inbox / name).write_text(name, encoding="utf-8")
        (inbox / "nested.jpg").mkdir()
        (inbox / "nested.jpg" / "inner.txt").write_text("inner", encoding="utf-8")
        (inbox / "docs").mkdir()
        result = await self._run(op="move_all", path="inbox", destination="images", extensions=[".jpg", "PNG"])
        self.assertTrue(result.ok)
        self.assertEqual(result.payload["moved"], ["a.JPG", "b.png", "nested.jpg"])
        self.assertEqual(result.payload["errors"], [])
        images = Path(self.root) / "images"
        self.assertEqual(sorted(os.listdir(images)), ["a.JPG", "b.png", "nested.jpg"])
        self.assertEqual((images / "nested.jpg" / "inner.txt").read_text(encoding="utf-8"), "inner")
        self.assertEqual(sorted(os.listdir(inbox)), ["c.txt", "docs", "noext"])

    async def test_move_all_never_moves_its_own_destination(self):
        inbox = Path(self.root) / "inbox"
        (inbox / "archive.zip").mkdir(parents=True)
        (inbox / "one.zip").write_text("1", encoding="utf-8")
        result = await self._run(op="move_all", path="inbox", destination="inbox/archive.zip", extensions=["zip"])
        self.assertTrue(result.ok)
        self.assertEqual(result.payload["moved"], ["one.zip"])
        self.assertTrue((inbox / "archive.zip" / "one.zip").exists())

    async def test_move_all_tolerates_partial_failure(self):
        inbox = Path(self.root) / "inbox"
        inbox.mkdir()
        for name in ("1.log", "2.log", "3.log"):
            (inbox / name).write_text(name, encoding="utf-8")

        from sandbox_agent.execution import file_ops

        real_move = file_ops._move_path

        def flaky_move(src, dest):
            if os.path.basename(src) == "2.log":
                raise OSError(errno.EACCES, "Permission denied", src)
            real_move(src, dest)

        with mock.patch("sandbox_agent.execution.file_ops._move_path", side_effect=flaky_move):
            result = await self._run(op="move_all", path="inbox", destination="logs", extensions=["log"])
        self.assertTrue(result.ok)
        self.assertEqual(result.payload["moved"], ["1.log", "3.log"])
        self.assertEqual(result.payload["errors"], [{"file": "2.log", "error": "Permission denied: 2.log"}])

    async def test_move_all_missing_source(self):
        result = await self._run(op="move_all", path="nowhere", destination="x", extensions=["txt"])
        self.assertEqual(result.code, "not_found")

    async def test_unknown_kind_is_rejected(self):
        op = mock.Mock(op="remember")
        result = await self.executor.execute(op, self.root)
        self.assertEqual(result.code, "invalid_operation")
        self.assertFalse(self.executor.supports("remember"))
        self.assertTrue(self.executor.supports("move_all"))


class TestHelpers(unittest.TestCase):
    def test_normalize_extensions(self):
        self.assertEqual(normalize_extensions([".JPG", "png", " ", "."]), {"jpg", "png"})

    def test_filter_names_without_pattern(self):
        self.assertEqual(filter_names(["a", "b"], None), ["a", "b"])
