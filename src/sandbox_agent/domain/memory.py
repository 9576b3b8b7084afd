"""Records owned by the memory and vector stores.

Action log and conversation entries are append-only; they are written once
and read back truncated to the most recent N for context assembly.  Vector
entries are keyed by path, so an upsert replaces the entry for that path.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

ROLES = frozenset([ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM])


@dataclass(frozen=True)
class ActionLogEntry:
    id: str
    timestamp: str
    session_id: Optional[str]
    operation: Dict[str, Any]
    result: Dict[str, Any]


@dataclass(frozen=True)
class ConversationEntry:
    id: str
    timestamp: str
    role: str
    content: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class VectorEntry:
    path: str
    embedding: List[float]
    last_modified: float
    hash: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchHit:
    path: str
    score: float
