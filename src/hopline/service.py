"""Request/response surface consumed by a chat front end."""

from __future__ import annotations

import sqlite3
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from hopline.bus import BusProtocol
from hopline.capabilities import CapabilityRegistry
from hopline.config import Settings
from hopline.confirmation import ConfirmationDecision, ConfirmationGate
from hopline.errors import HoplineError
from hopline.events import OrchestrationEvent
from hopline.store import EngineStore
from hopline.types import ChatMessage, ProcessingStatus, Role, Session, StepType, Turn

FailTurn = Callable[[OrchestrationEvent, str], Awaitable[Any]]


@dataclass(frozen=True)
class SendResult:
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class SessionDetails:
    session_id: str | None
    welcome_message: str | None = None
    transient_messages_enabled: bool = True


class ChatService:
    """Starts turns and reads conversations; turn results arrive on the final-result channel."""

    def __init__(
        self,
        *,
        store: EngineStore,
        registry: CapabilityRegistry,
        bus: BusProtocol,
        settings: Settings,
        fail_turn: FailTurn,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._registry = registry
        self._bus = bus
        self._settings = settings
        self._fail_turn = fail_turn
        self._clock = clock

    async def send_message(
        self,
        session_id: str,
        user_message: str,
        context_record_id: str | None = None,
        turn_identifier: str | None = None,
    ) -> SendResult:
        """Start a turn for the message, or answer a pending confirmation; returns before the turn runs."""
        turn_identifier = turn_identifier or uuid.uuid4().hex
        session = self._store.get_session(session_id)
        if session is None:
            logger.warning("send.session_missing session={}", session_id)
            return SendResult(success=False, error=f"session not found: {session_id}")
        if context_record_id is not None and session.context_record_id not in (None, context_record_id):
            return self._reject(session, turn_identifier, f"session {session_id} belongs to another record")
        if not user_message.strip():
            return self._reject(session, turn_identifier, "message is empty")

        active = self._store.active_turn(session_id)
        replayed = active is not None and active.resume_reply_id == turn_identifier
        if replayed or self._store.find_message(session_id, turn_identifier) is not None:
            logger.info("send.duplicate session={} turn={}", session_id, turn_identifier)
            return SendResult(success=True)

        if active is not None and active.processing_status is ProcessingStatus.AWAITING_ACTION:
            decision = ConfirmationGate.classify_reply(user_message)
            if decision is not None:
                logger.info("send.confirmation_reply turn={} decision={}", active.turn_identifier, decision)
                return await self._resume(active, decision, reply=user_message, reply_id=turn_identifier)
            logger.info("send.supersedes_confirmation turn={}", active.turn_identifier)

        message = ChatMessage(
            session_id=session_id,
            role=Role.USER,
            content=user_message,
            external_id=turn_identifier,
            timestamp=self._clock(),
            turn_identifier=turn_identifier,
        )
        try:
            turn, _ = self._store.start_turn(session_id, turn_identifier, message, now=self._clock())
        except (HoplineError, sqlite3.Error) as exc:
            logger.exception("send.start_failed session={} turn={}", session_id, turn_identifier)
            return self._reject(session, turn_identifier, str(exc))

        event = OrchestrationEvent(
            session_id=session_id,
            user_id=turn.user_id,
            agent_id=turn.agent_id,
            turn_identifier=turn_identifier,
            turn_count=turn.turn_count,
            next_step_type=StepType.PREPARE_MODEL_CALL,
            sequence_number=1,
            payload={"user_message_id": turn_identifier},
        )
        logger.info("send.turn_started session={} turn={} turn_count={}", session_id, turn_identifier, turn.turn_count)
        return await self._publish(event)

    async def confirm_action(self, session_id: str, turn_identifier: str, approved: bool) -> SendResult:
        """Approve or deny the call the given turn is suspended on."""
        self._store.require_session(session_id)
        active = self._store.active_turn(session_id)
        if (
            active is None
            or active.turn_identifier != turn_identifier
            or active.processing_status is not ProcessingStatus.AWAITING_ACTION
        ):
            return SendResult(success=False, error=f"turn {turn_identifier} is not awaiting confirmation")
        decision = ConfirmationDecision.APPROVE if approved else ConfirmationDecision.DENY
        return await self._resume(active, decision)

    def create_new_chat_session(
        self,
        context_record_id: str | None,
        agent_developer_name: str,
        user_id: str | None = None,
    ) -> SessionDetails:
        agent = self._registry.agent(agent_developer_name)
        session = self._store.create_session(
            Session(
                session_id=uuid.uuid4().hex,
                user_id=user_id or self._settings.default_user_id,
                agent_id=agent.developer_name,
                created_at=self._clock(),
                context_record_id=context_record_id,
            )
        )
        logger.info("session.created session={} agent={}", session.session_id, agent.developer_name)
        return SessionDetails(
            session_id=session.session_id,
            welcome_message=agent.welcome_message,
            transient_messages_enabled=agent.transient_messages_enabled,
        )

    def get_most_recent_session(
        self,
        agent_developer_name: str,
        context_record_id: str | None = None,
        user_id: str | None = None,
    ) -> SessionDetails:
        agent = self._registry.agent(agent_developer_name)
        session = self._store.most_recent_session(
            agent.developer_name, user_id or self._settings.default_user_id, context_record_id
        )
        return SessionDetails(
            session_id=session.session_id if session is not None else None,
            welcome_message=agent.welcome_message,
            transient_messages_enabled=agent.transient_messages_enabled,
        )

    def get_chat_history(
        self,
        session_id: str,
        limit_count: int | None = None,
        oldest_message_timestamp: float | None = None,
    ) -> list[ChatMessage]:
        """One page of messages older than the timestamp, oldest first."""
        self._store.require_session(session_id)
        limit = self._settings.history_page_size if limit_count is None else limit_count
        if limit <= 0:
            return []
        return self._store.history(session_id, limit, before=oldest_message_timestamp)

    def start_over_from_message(self, session_id: str, external_id: str) -> None:
        removed = self._store.start_over(session_id, external_id)
        if removed == 0:
            logger.warning("session.start_over_missing session={} external_id={}", session_id, external_id)
            return
        logger.info("session.start_over session={} external_id={} removed={}", session_id, external_id, removed)

    def load_session_content(self, details: SessionDetails, limit_count: int | None = None) -> list[ChatMessage]:
        """What a client shows on open: the history, or the welcome message for an empty session."""
        if details.session_id is None:
            return []
        history = self.get_chat_history(details.session_id, limit_count)
        if history or not details.welcome_message:
            return history
        return [
            ChatMessage(
                session_id=details.session_id,
                role=Role.ASSISTANT,
                content=details.welcome_message,
                external_id=f"welcome-{details.session_id}",
                timestamp=self._clock(),
            )
        ]

    async def _resume(
        self, turn: Turn, decision: ConfirmationDecision, reply: str = "", reply_id: str | None = None
    ) -> SendResult:
        resumed = self._store.resume_turn(turn.turn_identifier, turn.turn_count, now=self._clock(), reply_id=reply_id)
        if resumed is None or resumed.pending_action is None:
            return SendResult(success=False, error=f"turn {turn.turn_identifier} is not awaiting confirmation")
        event = OrchestrationEvent(
            session_id=resumed.session_id,
            user_id=resumed.user_id,
            agent_id=resumed.agent_id,
            turn_identifier=resumed.turn_identifier,
            turn_count=resumed.turn_count,
            next_step_type=StepType.DISPATCH_ACTIONS,
            sequence_number=self._store.last_sequence(resumed.turn_identifier) + 1,
            payload=ConfirmationGate.resume_payload(resumed.pending_action, decision, reply),
        )
        return await self._publish(event)

    async def _publish(self, event: OrchestrationEvent) -> SendResult:
        try:
            await self._bus.publish_orchestration(event)
        except Exception as exc:
            logger.exception("send.publish_failed turn={}", event.turn_identifier)
            await self._fail_turn(event, f"enqueue_failed: {exc}")
            return SendResult(success=False, error=str(exc))
        return SendResult(success=True)

    def _reject(self, session: Session, turn_identifier: str, error: str) -> SendResult:
        """Fail a send before any turn exists, leaving one system-error message behind."""
        message = ChatMessage(
            session_id=session.session_id,
            role=Role.SYSTEM,
            content=f"System Error: {error}",
            external_id=f"error-{turn_identifier}",
            timestamp=self._clock(),
            turn_identifier=turn_identifier,
            is_system_error=True,
        )
        try:
            self._store.append_message(message)
        except sqlite3.IntegrityError:
            logger.info("send.reject_repeated turn={}", turn_identifier)
        return SendResult(success=False, error=error)


