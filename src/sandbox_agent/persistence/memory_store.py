import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sandbox_agent.domain.memory import ROLES, ActionLogEntry, ConversationEntry


class SqliteMemoryStore:
    """Long-term facts, the action log and the conversation log.

    Every write is a single short transaction guarded by one lock, so a
    remember and an action-log append issued by sibling operations never
    interleave half way.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
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
                CREATE TABLE IF NOT EXISTS long_term (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS action_log (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL,
                    session_id TEXT,
                    operation TEXT NOT NULL,
                    result TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL,
                    session_id TEXT,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    def remember(self, key: str, value: str) -> None:
        key = str(key or "").strip()
        if not key:
            raise ValueError("Memory key must not be empty.")
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO long_term (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, str(value), _utc_now()),
            )

    def recall(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM long_term WHERE key = ?", (str(key or "").strip(),)).fetchone()
        return row["value"] if row is not None else None

    def get_all_facts(self) -> Dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM long_term ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def forget(self, key: str) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM long_term WHERE key = ?", (str(key or "").strip(),))
        return cur.rowcount > 0

    def log_action(
        self,
        operation: Dict[str, Any],
        result: Dict[str, Any],
        session_id: Optional[str] = None,
    ) -> ActionLogEntry:
        entry = ActionLogEntry(
            id=str(uuid.uuid4()),
            timestamp=_utc_now(),
            session_id=session_id,
            operation=dict(operation),
            result=dict(result),
        )
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO action_log (id, session_id, operation, result, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    session_id,
                    json.dumps(entry.operation, ensure_ascii=False, default=str),
                    json.dumps(entry.result, ensure_ascii=False, default=str),
                    entry.timestamp,
                ),
            )
        return entry

    def get_recent_actions(self, limit: int = 10, session_id: Optional[str] = None) -> List[ActionLogEntry]:
        query = "SELECT id, session_id, operation, result, created_at FROM action_log"
        params: List[Any] = []
        if session_id:
            query += " WHERE session_id = ?"
            params.append(session_id)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        # Return chronological order.
        return [
            ActionLogEntry(
                id=row["id"],
                timestamp=row["created_at"],
                session_id=row["session_id"],
                operation=json.loads(row["operation"]),
                result=json.loads(row["result"]),
            )
            for row in reversed(rows)
        ]

    def count_actions(self) -> int:
        with self._connect() as conn:
            return int(conn.execute("SELECT COUNT(*) AS c FROM action_log").fetchone()["c"])

    def add_message(self, role: str, content: str, session_id: Optional[str] = None) -> ConversationEntry:
        if role not in ROLES:
            raise ValueError(f"Unsupported conversation role: {role}")
        entry = ConversationEntry(
            id=str(uuid.uuid4()),
            timestamp=_utc_now(),
            role=role,
            content=str(content),
            session_id=session_id,
        )
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations (id, session_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry.id, session_id, entry.role, entry.content, entry.timestamp),
            )
        return entry

    def get_recent_conversation(self, limit: int = 10, session_id: Optional[str] = None) -> List[ConversationEntry]:
        query = "SELECT id, session_id, role, content, created_at FROM conversations"
        params: List[Any] = []
        if session_id:
            query += " WHERE session_id = ?"
            params.append(session_id)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ConversationEntry(
                id=row["id"],
                timestamp=row["created_at"],
                role=row["role"],
                content=row["content"],
                session_id=row["session_id"],
            )
            for row in reversed(rows)
        ]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
