from __future__ import annotations

import os
import re
import unicodedata

from sandbox_agent.domain.errors import SandboxViolation

_QUOTE_RE = re.compile("['‘’‚‛`´\"“”„‟]")


def normalize_quotes(name: str) -> str:
    return _QUOTE_RE.sub("'", unicodedata.normalize("NFC", name or ""))


def normalize_root(root: str) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(root))))


def is_within(root: str, target: str) -> bool:
    try:
        return os.path.commonpath([root, target]) == root
    except ValueError:
        return False


def resolve(root: str, relative_path: str) -> str:
    """Resolve ``relative_path`` against ``root`` lexically.

    Symlinks are not followed.  Raises ``SandboxViolation`` for anything that
    ends up outside ``root`` (``..`` traversal, absolute paths, NUL bytes).
    """
    root = normalize_root(root)
    raw = str(relative_path or "").strip()
    if "\x00" in raw:
        raise SandboxViolation(f"Security Violation: Path {raw!r} contains a NUL byte.")
    target = os.path.normpath(os.path.join(root, raw))
    if not is_within(root, target):
        raise SandboxViolation(f"Security Violation: Path {raw} traverses outside the sandbox.")
    return target


def find_existing(root: str, relative_path: str) -> str:
    """Like ``resolve`` but recovers basenames that differ only by quote style.

    Returns the exact resolved path when nothing matches so the caller can
    report a plain "not found".
    """
    target = resolve(root, relative_path)
    if os.path.lexists(target):
        return target
    parent, base = os.path.split(target)
    if not os.path.isdir(parent):
        return target
    wanted = normalize_quotes(base)
    try:
        names = sorted(os.listdir(parent))
    except OSError:
        return target
    for name in names:
        if normalize_quotes(name) == wanted:
            return os.path.join(parent, name)
    return target


def relative_to_root(root: str, target: str) -> str:
    rel = os.path.relpath(target, normalize_root(root))
    return rel.replace(os.sep, "/")
