"""Filesystem operations executed inside the sandbox root.

``OperationExecutor.execute`` takes one filesystem operation and always
returns an ``OperationResult``; errors never propagate past it.  Blocking
filesystem calls run in worker threads so sibling operations of one batch
proceed concurrently.
"""
from __future__ import annotations

import asyncio
import errno
import logging
import os
import shutil
from typing import Any, Awaitable, Callable, Dict, List

from sandbox_agent.domain.errors import NotFound, SandboxAgentError, SandboxViolation, TransientIOError
from sandbox_agent.domain.operations import OperationResult
from sandbox_agent.execution import paths
from sandbox_agent.observability.structured_log import log_json

logger = logging.getLogger(__name__)

DEFAULT_DELETE_RETRY_ATTEMPTS = 2
DEFAULT_DELETE_RETRY_DELAY_SEC = 0.5


class OperationExecutor:
    def __init__(
        self,
        delete_retry_attempts: int = DEFAULT_DELETE_RETRY_ATTEMPTS,
        delete_retry_delay_sec: float = DEFAULT_DELETE_RETRY_DELAY_SEC,
    ):
        self._delete_retry_attempts = max(0, int(delete_retry_attempts))
        self._delete_retry_delay_sec = max(0.0, float(delete_retry_delay_sec))
        self._handlers: Dict[str, Callable[[Any, str], Awaitable[OperationResult]]] = {
            "write": self._write,
            "read": self._read,
            "mkdir": self._mkdir,
            "delete": self._delete,
            "move": self._move,
            "copy": self._copy,
            "list": self._list,
            "move_all": self._move_all,
        }

    def supports(self, kind: str) -> bool:
        return kind in self._handlers

    async def execute(self, operation: Any, root: str) -> OperationResult:
        kind = str(getattr(operation, "op", "") or "")
        handler = self._handlers.get(kind)
        if handler is None:
            return OperationResult.failure(kind, f"Unknown operation type: {kind}", code="invalid_operation")
        try:
            return await handler(operation, root)
        except SandboxAgentError as exc:
            return OperationResult.failure(kind, str(exc), code=exc.code)
        except OSError as exc:
            return OperationResult.failure(kind, _describe_os_error(exc), code="io_error")
        except Exception as exc:
            logger.exception("unexpected failure in %s operation", kind)
            return OperationResult.failure(kind, str(exc) or type(exc).__name__, code="internal_error")

    async def _write(self, op: Any, root: str) -> OperationResult:
        target = paths.resolve(root, op.path)
        await asyncio.to_thread(_write_text, target, op.content)
        return OperationResult.success("write", path=op.path)

    async def _read(self, op: Any, root: str) -> OperationResult:
        target = paths.find_existing(root, op.path)
        if not os.path.exists(target):
            raise NotFound(f"File not found: {op.path}")
        content = await asyncio.to_thread(_read_text, target)
        return OperationResult.success("read", path=op.path, content=content)

    async def _mkdir(self, op: Any, root: str) -> OperationResult:
        target = paths.resolve(root, op.path)
        await asyncio.to_thread(os.makedirs, target, exist_ok=True)
        return OperationResult.success("mkdir", path=op.path)

    async def _delete(self, op: Any, root: str) -> OperationResult:
        target = paths.find_existing(root, op.path)
        if target == paths.normalize_root(root):
            raise SandboxViolation("Refusing to delete the sandbox root.")
        if not os.path.lexists(target):
            raise NotFound(f"Path not found: {op.path}")
        attempt = 0
        while True:
            try:
                await asyncio.to_thread(_remove_path, target)
                break
            except OSError as exc:
                if exc.errno != errno.EBUSY:
                    raise
                if attempt >= self._delete_retry_attempts:
                    raise TransientIOError(f"Resource busy, could not delete {op.path}: {exc}") from exc
                attempt += 1
                log_json(logger, "operation.delete.retry", path=op.path, attempt=attempt)
                await asyncio.sleep(self._delete_retry_delay_sec)
        return OperationResult.success("delete", path=op.path)

    async def _move(self, op: Any, root: str) -> OperationResult:
        src, dest = _transfer_paths(root, op.from_, op.to)
        await asyncio.to_thread(_move_path, src, dest)
        return OperationResult.success("move", **{"from": op.from_, "to": op.to})

    async def _copy(self, op: Any, root: str) -> OperationResult:
        src, dest = _transfer_paths(root, op.from_, op.to)
        await asyncio.to_thread(_copy_path, src, dest)
        return OperationResult.success("copy", **{"from": op.from_, "to": op.to})

    async def _list(self, op: Any, root: str) -> OperationResult:
        target = paths.find_existing(root, op.path)
        if not os.path.exists(target):
            raise NotFound(f"Directory not found: {op.path}")
        names = sorted(await asyncio.to_thread(os.listdir, target))
        files = filter_names(names, op.pattern)
        return OperationResult.success("list", path=op.path, files=files)

    async def _move_all(self, op: Any, root: str) -> OperationResult:
        src_dir = paths.find_existing(root, op.path)
        dest_dir = paths.resolve(root, op.destination)
        if not os.path.isdir(src_dir):
            raise NotFound(f"Source directory not found: {op.path}")
        wanted = normalize_extensions(op.extensions)
        moved, errors = await asyncio.to_thread(_move_matching, src_dir, dest_dir, wanted)
        if errors:
            log_json(logger, "operation.move_all.partial", path=op.path, moved=len(moved), failed=len(errors))
        return OperationResult.success(
            "move_all",
            path=op.path,
            destination=op.destination,
            moved=moved,
            errors=errors,
        )


def filter_names(names: List[str], pattern: Any) -> List[str]:
    if not pattern:
        return list(names)
    needle = str(pattern).lower()
    if needle.startswith("*"):
        needle = needle[1:]
    return [n for n in names if needle in n.lower()]


def normalize_extensions(extensions: Any) -> set:
    return {str(e).strip().lower().lstrip(".") for e in (extensions or []) if str(e).strip(". ")}


def _transfer_paths(root: str, source: str, destination: str) -> tuple[str, str]:
    src = paths.find_existing(root, source)
    dest = paths.resolve(root, destination)
    if not os.path.lexists(src):
        raise NotFound(f"Source not found: {source}")
    if src == paths.normalize_root(root):
        raise SandboxViolation("The sandbox root cannot be moved or copied.")
    if os.path.isdir(src) and dest != src and paths.is_within(src, dest):
        raise SandboxAgentError(f"Cannot place {source} inside itself.")
    return src, dest


def _write_text(target: str, content: str) -> None:
    os.makedirs(os.path.dirname(target), exist_ok=True)
    with open(target, "w", encoding="utf-8") as fh:
        fh.write(content)


def _read_text(target: str) -> str:
    with open(target, "r", encoding="utf-8", errors="replace") as fh:
        return fh.read()


def _remove_path(target: str) -> None:
    if os.path.isdir(target) and not os.path.islink(target):
        shutil.rmtree(target)
    else:
        os.remove(target)


def _move_path(src: str, dest: str) -> None:
    if src == dest:
        return
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    if os.path.lexists(dest):
        _remove_path(dest)
    shutil.move(src, dest)


def _copy_path(src: str, dest: str) -> None:
    if src == dest:
        return
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    if os.path.isdir(src):
        if os.path.lexists(dest) and not os.path.isdir(dest):
            os.remove(dest)
        shutil.copytree(src, dest, dirs_exist_ok=True)
        return
    if os.path.isdir(dest) and not os.path.islink(dest):
        shutil.rmtree(dest)
    shutil.copy2(src, dest)


def _move_matching(src_dir: str, dest_dir: str, wanted: set) -> tuple[List[str], List[Dict[str, str]]]:
    """Move immediate children of ``src_dir`` whose extension is wanted.

    Matching subdirectories move whole, like files. The destination itself is
    never moved even when it sits in ``src_dir`` with a matching name.
    """
    os.makedirs(dest_dir, exist_ok=True)
    moved: List[str] = []
    errors: List[Dict[str, str]] = []
    if src_dir == dest_dir:
        return moved, errors
    for name in sorted(os.listdir(src_dir)):
        source = os.path.join(src_dir, name)
        if source == dest_dir:
            continue
        ext = os.path.splitext(name)[1].lower().lstrip(".")
        if not ext or ext not in wanted:
            continue
        try:
            _move_path(source, os.path.join(dest_dir, name))
            moved.append(name)
        except OSError as exc:
            errors.append({"file": name, "error": _describe_os_error(exc)})
    return moved, errors


def _describe_os_error(exc: OSError) -> str:
    if exc.strerror and exc.filename:
        return f"{exc.strerror}: {os.path.basename(str(exc.filename))}"
    return str(exc) or type(exc).__name__
