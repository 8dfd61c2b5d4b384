"""SQLite persistence for sessions, turns, steps, messages and the prerequisite ledger."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from hopline.errors import DuplicateStepError, OutOfOrderStepError, SessionNotFoundError, StaleTurnError
from hopline.types import (
    ChatMessage,
    ExecutionStep,
    PendingAction,
    ProcessingStatus,
    Role,
    Session,
    StepType,
    Turn,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    context_record_id TEXT,
    created_at REAL NOT NULL,
    turn_count INTEGER NOT NULL DEFAULT 0,
    active_turn_identifier TEXT,
    summary TEXT NOT NULL DEFAULT '',
    summary_through_id INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS turns (
    turn_identifier TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    turn_count INTEGER NOT NULL,
    processing_status TEXT NOT NULL,
    last_activity_at REAL NOT NULL,
    pending_action TEXT,
    resume_reply_id TEXT
);
CREATE TABLE IF NOT EXISTS steps (
    turn_identifier TEXT NOT NULL REFERENCES turns(turn_identifier) ON DELETE CASCADE,
    sequence_number INTEGER NOT NULL,
    step_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at REAL NOT NULL,
    PRIMARY KEY (turn_identifier, sequence_number)
);
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    external_id TEXT NOT NULL,
    turn_identifier TEXT,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tool_calls_data TEXT,
    tool_result_data TEXT,
    tool_call_id TEXT,
    tool_name TEXT,
    is_system_error INTEGER NOT NULL DEFAULT 0,
    timestamp REAL NOT NULL,
    UNIQUE (session_id, external_id)
);
CREATE TABLE IF NOT EXISTS prerequisites (
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    capability_name TEXT NOT NULL,
    turn_identifier TEXT,
    satisfied_at REAL NOT NULL,
    PRIMARY KEY (session_id, capability_name)
);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages (session_id, id);
CREATE INDEX IF NOT EXISTS idx_sessions_agent ON sessions (agent_id, user_id, created_at);
"""


@dataclass
class HopCommit:
    """Everything one hop writes, applied in a single transaction."""

    session_id: str
    turn_count: int
    step: ExecutionStep
    status: ProcessingStatus | None = None
    pending_action: PendingAction | None = None
    clear_pending: bool = False
    messages: list[ChatMessage] = field(default_factory=list)
    satisfied_capabilities: list[str] = field(default_factory=list)
    summary: tuple[str, int] | None = None


class EngineStore:
    """SQLite-based engine store with thread-safe access."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        self._local = threading.local()

    @property
    def _conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(_SCHEMA)
            self._local.conn = conn
            return conn
        return self._local.conn  # type: ignore[no-any-return]

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def close(self) -> None:
        if hasattr(self._local, "conn") and self._local.conn:
            self._local.conn.close()
            self._local.conn = None

    # Sessions

    def create_session(self, session: Session) -> Session:
        self._conn.execute(
            """INSERT INTO sessions
            (session_id, user_id, agent_id, context_record_id, created_at, turn_count, active_turn_identifier)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                session.session_id,
                session.user_id,
                session.agent_id,
                session.context_record_id,
                session.created_at,
                session.turn_count,
                session.active_turn_identifier,
            ),
        )
        return session

    def get_session(self, session_id: str) -> Session | None:
        row = self._conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        return _session_from_row(row) if row is not None else None

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def most_recent_session(self, agent_id: str, user_id: str, context_record_id: str | None = None) -> Session | None:
        if context_record_id is not None:
            row = self._conn.execute(
                """SELECT * FROM sessions WHERE agent_id = ? AND user_id = ? AND context_record_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1""",
                (agent_id, user_id, context_record_id),
            ).fetchone()
        else:
            row = self._conn.execute(
                """SELECT * FROM sessions WHERE agent_id = ? AND user_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1""",
                (agent_id, user_id),
            ).fetchone()
        return _session_from_row(row) if row is not None else None

    # Turns

    def start_turn(
        self, session_id: str, turn_identifier: str, user_message: ChatMessage, now: float | None = None
    ) -> tuple[Turn, ChatMessage]:
        """Supersede the active turn, open a new one and append its user message atomically."""
        now = time.time() if now is None else now
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
            if row is None:
                raise SessionNotFoundError(session_id)
            session = _session_from_row(row)
            if session.active_turn_identifier is not None:
                conn.execute(
                    """UPDATE turns SET processing_status = ?, pending_action = NULL, last_activity_at = ?
                    WHERE turn_identifier = ? AND processing_status != ?""",
                    (ProcessingStatus.IDLE, now, session.active_turn_identifier, ProcessingStatus.IDLE),
                )
            turn = Turn(
                session_id=session_id,
                user_id=session.user_id,
                agent_id=session.agent_id,
                turn_identifier=turn_identifier,
                turn_count=session.turn_count + 1,
                processing_status=ProcessingStatus.PROCESSING,
                last_activity_at=now,
            )
            conn.execute(
                """INSERT INTO turns
                (turn_identifier, session_id, user_id, agent_id, turn_count, processing_status, last_activity_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    turn.turn_identifier,
                    turn.session_id,
                    turn.user_id,
                    turn.agent_id,
                    turn.turn_count,
                    turn.processing_status,
                    turn.last_activity_at,
                ),
            )
            conn.execute(
                "UPDATE sessions SET turn_count = ?, active_turn_identifier = ? WHERE session_id = ?",
                (turn.turn_count, turn.turn_identifier, session_id),
            )
            stored = _insert_message(conn, user_message)
        return turn, stored

    def get_turn(self, turn_identifier: str) -> Turn | None:
        row = self._conn.execute("SELECT * FROM turns WHERE turn_identifier = ?", (turn_identifier,)).fetchone()
        return _turn_from_row(row) if row is not None else None

    def active_turn(self, session_id: str) -> Turn | None:
        row = self._conn.execute(
            """SELECT turns.* FROM turns JOIN sessions
            ON sessions.active_turn_identifier = turns.turn_identifier
            WHERE sessions.session_id = ?""",
            (session_id,),
        ).fetchone()
        return _turn_from_row(row) if row is not None else None

    def resume_turn(
        self, turn_identifier: str, turn_count: int, now: float | None = None, reply_id: str | None = None
    ) -> Turn | None:
        """Move a suspended turn back to processing; None when it was not awaiting an action.

        `reply_id` is the turn identifier of the user reply that resumed it, kept so a redelivered
        reply is recognised as a duplicate.
        """
        now = time.time() if now is None else now
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE turns SET processing_status = ?, last_activity_at = ?, resume_reply_id = ?
                WHERE turn_identifier = ? AND turn_count = ? AND processing_status = ?""",
                (
                    ProcessingStatus.PROCESSING,
                    now,
                    reply_id,
                    turn_identifier,
                    turn_count,
                    ProcessingStatus.AWAITING_ACTION,
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM turns WHERE turn_identifier = ?", (turn_identifier,)).fetchone()
        return _turn_from_row(row)

    # Steps

    def last_sequence(self, turn_identifier: str) -> int:
        row = self._conn.execute(
            "SELECT MAX(sequence_number) AS last FROM steps WHERE turn_identifier = ?", (turn_identifier,)
        ).fetchone()
        return int(row["last"] or 0)

    def steps(self, turn_identifier: str) -> list[ExecutionStep]:
        rows = self._conn.execute(
            "SELECT * FROM steps WHERE turn_identifier = ? ORDER BY sequence_number", (turn_identifier,)
        ).fetchall()
        return [
            ExecutionStep(
                turn_identifier=row["turn_identifier"],
                sequence_number=row["sequence_number"],
                step_type=StepType(row["step_type"]),
                payload=json.loads(row["payload"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def commit_hop(self, commit: HopCommit) -> list[ChatMessage]:
        """Apply one hop's writes, or nothing when the hop is stale, duplicate or out of order."""
        step = commit.step
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (commit.session_id,)).fetchone()
            if row is None:
                raise SessionNotFoundError(commit.session_id)
            if row["turn_count"] != commit.turn_count or row["active_turn_identifier"] != step.turn_identifier:
                raise StaleTurnError(step.turn_identifier)

            last = conn.execute(
                "SELECT MAX(sequence_number) AS last FROM steps WHERE turn_identifier = ?", (step.turn_identifier,)
            ).fetchone()["last"] or 0
            if step.sequence_number <= last:
                raise DuplicateStepError(f"{step.turn_identifier}:{step.sequence_number}")
            if step.sequence_number != last + 1:
                raise OutOfOrderStepError(f"{step.turn_identifier}:{step.sequence_number} after {last}")

            try:
                conn.execute(
                    """INSERT INTO steps (turn_identifier, sequence_number, step_type, payload, created_at)
                    VALUES (?, ?, ?, ?, ?)""",
                    (
                        step.turn_identifier,
                        step.sequence_number,
                        step.step_type,
                        json.dumps(step.payload, ensure_ascii=False),
                        step.created_at or time.time(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateStepError(f"{step.turn_identifier}:{step.sequence_number}") from exc

            stored = [_insert_message(conn, message) for message in commit.messages]

            now = time.time()
            if commit.status is not None:
                conn.execute(
                    "UPDATE turns SET processing_status = ?, last_activity_at = ? WHERE turn_identifier = ?",
                    (commit.status, now, step.turn_identifier),
                )
            if commit.pending_action is not None:
                conn.execute(
                    "UPDATE turns SET pending_action = ? WHERE turn_identifier = ?",
                    (json.dumps(commit.pending_action.to_payload(), ensure_ascii=False), step.turn_identifier),
                )
            elif commit.clear_pending:
                conn.execute(
                    "UPDATE turns SET pending_action = NULL WHERE turn_identifier = ?", (step.turn_identifier,)
                )

            for capability in commit.satisfied_capabilities:
                conn.execute(
                    """INSERT OR IGNORE INTO prerequisites (session_id, capability_name, turn_identifier, satisfied_at)
                    VALUES (?, ?, ?, ?)""",
                    (commit.session_id, capability, step.turn_identifier, now),
                )
            if commit.summary is not None:
                summary, through_id = commit.summary
                conn.execute(
                    "UPDATE sessions SET summary = ?, summary_through_id = ? WHERE session_id = ?",
                    (summary, through_id, commit.session_id),
                )
        return stored

    # Messages

    def messages(self, session_id: str) -> list[ChatMessage]:
        rows = self._conn.execute("SELECT * FROM messages WHERE session_id = ? ORDER BY id", (session_id,)).fetchall()
        return [_message_from_row(row) for row in rows]

    def find_message(self, session_id: str, external_id: str) -> ChatMessage | None:
        row = self._conn.execute(
            "SELECT * FROM messages WHERE session_id = ? AND external_id = ?", (session_id, external_id)
        ).fetchone()
        return _message_from_row(row) if row is not None else None

    def append_message(self, message: ChatMessage) -> ChatMessage:
        with self._transaction() as conn:
            return _insert_message(conn, message)

    def history(self, session_id: str, limit: int, before: float | None = None) -> list[ChatMessage]:
        """Newest `limit` messages older than `before`, returned oldest first."""
        if before is not None:
            rows = self._conn.execute(
                """SELECT * FROM messages WHERE session_id = ? AND timestamp < ?
                ORDER BY timestamp DESC, id DESC LIMIT ?""",
                (session_id, before, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (session_id, limit),
            ).fetchall()
        return [_message_from_row(row) for row in reversed(rows)]

    def start_over(self, session_id: str, external_id: str) -> int:
        """Delete a message and everything after it; returns the number of removed messages."""
        with self._transaction() as conn:
            session_row = conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
            if session_row is None:
                raise SessionNotFoundError(session_id)
            row = conn.execute(
                "SELECT id FROM messages WHERE session_id = ? AND external_id = ?", (session_id, external_id)
            ).fetchone()
            if row is None:
                return 0
            cutoff = row["id"]
            removed = conn.execute(
                "DELETE FROM messages WHERE session_id = ? AND id >= ?", (session_id, cutoff)
            ).rowcount

            orphaned = [
                turn_row["turn_identifier"]
                for turn_row in conn.execute(
                    """SELECT turn_identifier FROM turns WHERE session_id = ? AND NOT EXISTS (
                        SELECT 1 FROM messages WHERE messages.session_id = turns.session_id
                        AND messages.external_id = turns.turn_identifier AND messages.role = ?)""",
                    (session_id, Role.USER),
                ).fetchall()
            ]
            for turn_identifier in orphaned:
                conn.execute(
                    "DELETE FROM prerequisites WHERE session_id = ? AND turn_identifier = ?",
                    (session_id, turn_identifier),
                )
                conn.execute("DELETE FROM turns WHERE turn_identifier = ?", (turn_identifier,))

            conn.execute(
                "UPDATE sessions SET turn_count = turn_count + 1, active_turn_identifier = NULL WHERE session_id = ?",
                (session_id,),
            )
            if session_row["summary_through_id"] >= cutoff:
                conn.execute(
                    "UPDATE sessions SET summary = '', summary_through_id = 0 WHERE session_id = ?", (session_id,)
                )
        return removed

    # Prerequisite ledger

    def satisfied_capabilities(self, session_id: str) -> set[str]:
        rows = self._conn.execute(
            "SELECT capability_name FROM prerequisites WHERE session_id = ?", (session_id,)
        ).fetchall()
        return {row["capability_name"] for row in rows}


def _insert_message(conn: sqlite3.Connection, message: ChatMessage) -> ChatMessage:
    cursor = conn.execute(
        """INSERT INTO messages
        (session_id, external_id, turn_identifier, role, content, tool_calls_data, tool_result_data,
        tool_call_id, tool_name, is_system_error, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            message.session_id,
            message.external_id,
            message.turn_identifier,
            message.role,
            message.content,
            message.tool_calls_data,
            message.tool_result_data,
            message.tool_call_id,
            message.tool_name,
            int(message.is_system_error),
            message.timestamp,
        ),
    )
    message.id = cursor.lastrowid
    return message


def _session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        session_id=row["session_id"],
        user_id=row["user_id"],
        agent_id=row["agent_id"],
        created_at=row["created_at"],
        context_record_id=row["context_record_id"],
        turn_count=row["turn_count"],
        active_turn_identifier=row["active_turn_identifier"],
        summary=row["summary"],
        summary_through_id=row["summary_through_id"],
    )


def _turn_from_row(row: sqlite3.Row) -> Turn:
    pending = row["pending_action"]
    return Turn(
        session_id=row["session_id"],
        user_id=row["user_id"],
        agent_id=row["agent_id"],
        turn_identifier=row["turn_identifier"],
        turn_count=row["turn_count"],
        processing_status=ProcessingStatus(row["processing_status"]),
        last_activity_at=row["last_activity_at"],
        pending_action=PendingAction.from_payload(json.loads(pending)) if pending else None,
        resume_reply_id=row["resume_reply_id"],
    )


def _message_from_row(row: sqlite3.Row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        session_id=row["session_id"],
        role=Role(row["role"]),
        content=row["content"],
        external_id=row["external_id"],
        timestamp=row["timestamp"],
        turn_identifier=row["turn_identifier"],
        tool_calls_data=row["tool_calls_data"],
        tool_result_data=row["tool_result_data"],
        tool_call_id=row["tool_call_id"],
        tool_name=row["tool_name"],
        is_system_error=bool(row["is_system_error"]),
    )
