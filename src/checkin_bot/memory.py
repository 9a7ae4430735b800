from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from sqlalchemy import create_engine, text

from .errors import SessionNotFound
from .reasoning import ReasoningAccumulator, ReasoningDelta

logger = logging.getLogger(__name__)

SessionStatus = Literal["active", "completed", "abandoned"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# -------------------------
# Aggregate
# -------------------------
@dataclass
class Step:
    node_id: str
    timestamp: datetime
    input: Any
    generated_response: str
    reasoning_snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "timestamp": _iso(self.timestamp),
            "input": self.input,
            "generated_response": self.generated_response,
            "reasoning_snapshot": self.reasoning_snapshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            node_id=data["node_id"],
            timestamp=_parse_iso(data.get("timestamp")) or utcnow(),
            input=data.get("input"),
            generated_response=data.get("generated_response", ""),
            reasoning_snapshot=dict(data.get("reasoning_snapshot") or {}),
        )


@dataclass
class Session:
    session_id: str
    user_id: str
    current_node_id: str
    status: SessionStatus = "active"
    steps: List[Step] = field(default_factory=list)
    reasoning: ReasoningAccumulator = field(default_factory=ReasoningAccumulator)
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    summary: Optional[Dict[str, Any]] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "current_node_id": self.current_node_id,
            "status": self.status,
            "steps": [s.to_dict() for s in self.steps],
            "reasoning": self.reasoning.to_dict(),
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            current_node_id=data["current_node_id"],
            status=data.get("status", "active"),
            steps=[Step.from_dict(s) for s in data.get("steps", [])],
            reasoning=ReasoningAccumulator.from_dict(data.get("reasoning")),
            created_at=_parse_iso(data.get("created_at")) or utcnow(),
            completed_at=_parse_iso(data.get("completed_at")),
            summary=data.get("summary"),
        )


# -------------------------
# Stores
# -------------------------
class SessionStore:
    """Durable single-record storage. Implementations hand out copies."""

    def insert(self, session: Session) -> None:
        raise NotImplementedError

    def load(self, session_id: str) -> Optional[Session]:
        raise NotImplementedError

    def save(self, session: Session) -> None:
        raise NotImplementedError

    def list_for_user(self, user_id: str, limit: int = 20) -> List[Session]:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def insert(self, session: Session) -> None:
        with self._lock:
            self._rows[session.session_id] = copy.deepcopy(session.to_dict())

    def load(self, session_id: str) -> Optional[Session]:
        with self._lock:
            row = self._rows.get(session_id)
            return Session.from_dict(copy.deepcopy(row)) if row is not None else None

    def save(self, session: Session) -> None:
        with self._lock:
            if session.session_id not in self._rows:
                raise SessionNotFound(session.session_id)
            self._rows[session.session_id] = copy.deepcopy(session.to_dict())

    def list_for_user(self, user_id: str, limit: int = 20) -> List[Session]:
        with self._lock:
            ordered = [(r["created_at"], idx, r) for idx, r in enumerate(self._rows.values()) if r["user_id"] == user_id]
        ordered.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [Session.from_dict(copy.deepcopy(r)) for _, _, r in ordered[:limit]]


class SqlSessionStore(SessionStore):
    """
    One JSON document per session row, via SQLAlchemy Core.
    Works against SQLite (>= 3.24) and Postgres.
    """

    def __init__(self, database_url: str, table: str = "checkin_sessions") -> None:
        if not database_url:
            raise ValueError("SqlSessionStore needs a DATABASE_URL")
        self.table = table
        self.engine = create_engine(database_url, pool_pre_ping=True)
        self.init_db()

    def init_db(self) -> None:
        """Create the sessions table if it doesn't exist."""
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                      session_id TEXT PRIMARY KEY,
                      user_id TEXT NOT NULL,
                      status TEXT NOT NULL,
                      document TEXT NOT NULL,
                      created_at TEXT NOT NULL,
                      updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
            )

    def _params(self, session: Session) -> Dict[str, Any]:
        return {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "status": session.status,
            "document": json.dumps(session.to_dict()),
            "created_at": _iso(session.created_at),
        }

    def insert(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    INSERT INTO {self.table} (session_id, user_id, status, document, created_at)
                    VALUES (:session_id, :user_id, :status, :document, :created_at)
                    """
                ),
                self._params(session),
            )

    def load(self, session_id: str) -> Optional[Session]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(f"SELECT document FROM {self.table} WHERE session_id = :session_id"),
                {"session_id": session_id},
            ).first()
        if row is None:
            return None
        return Session.from_dict(json.loads(row[0]))

    def save(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    INSERT INTO {self.table} (session_id, user_id, status, document, created_at)
                    VALUES (:session_id, :user_id, :status, :document, :created_at)
                    ON CONFLICT (session_id)
                    DO UPDATE SET
                      status = EXCLUDED.status,
                      document = EXCLUDED.document,
                      updated_at = CURRENT_TIMESTAMP
                    """
                ),
                self._params(session),
            )

    def list_for_user(self, user_id: str, limit: int = 20) -> List[Session]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT document FROM {self.table}
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC
                    LIMIT :limit
                    """
                ),
                {"user_id": user_id, "limit": limit},
            ).fetchall()
        return [Session.from_dict(json.loads(r[0])) for r in rows]


# -------------------------
# Session memory operations
# -------------------------
class SessionMemory:
    """Read-modify-write operations over one session record at a time."""

    def __init__(self, store: Optional[SessionStore] = None) -> None:
        self.store = store or InMemorySessionStore()

    def create(self, user_id: str, initial_node_id: str) -> Session:
        session = Session(session_id=uuid4().hex, user_id=user_id, current_node_id=initial_node_id)
        self.store.insert(session)
        logger.debug("Created session %s for user %s at %s", session.session_id, user_id, initial_node_id)
        return session

    def get(self, session_id: str) -> Session:
        session = self.store.load(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def append_step(self, session_id: str, step: Step) -> Session:
        session = self.get(session_id)
        session.steps.append(step)
        self.store.save(session)
        return session

    def merge_reasoning(self, session_id: str, delta: ReasoningDelta) -> Session:
        session = self.get(session_id)
        session.reasoning.merge(delta)
        self.store.save(session)
        return session

    def update_current_node(self, session_id: str, node_id: str) -> Session:
        session = self.get(session_id)
        previous = session.current_node_id
        session.current_node_id = node_id
        self.store.save(session)
        logger.debug("Session %s: %s -> %s", session_id, previous, node_id)
        return session

    def complete(self, session_id: str, summary: Dict[str, Any]) -> Session:
        session = self.get(session_id)
        session.status = "completed"
        session.completed_at = utcnow()
        session.summary = summary
        self.store.save(session)
        return session

    def abandon(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session.status == "active":
            session.status = "abandoned"
            session.completed_at = utcnow()
            self.store.save(session)
        return session

    def list_for_user(self, user_id: str, limit: int = 20) -> List[Session]:
        return self.store.list_for_user(user_id, limit)
