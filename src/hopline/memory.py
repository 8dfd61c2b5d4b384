"""Memory assembly: which persisted messages the model sees for a turn."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol, assert_never

from hopline.agents import BufferWindowConfig, MemoryConfig, SummaryBufferConfig
from hopline.model import ModelRequest
from hopline.types import ChatMessage, Role, Session

SUMMARY_PREFIX = "Summary of the earlier conversation:\n"


@dataclass(frozen=True)
class SummaryRequest:
    """Messages that must be folded into the running summary before the model call."""

    previous_summary: str
    messages: list[ChatMessage]
    through_id: int


@dataclass(frozen=True)
class MemoryContext:
    messages: list[ChatMessage]
    summary: str = ""
    pending_summary: SummaryRequest | None = None

    def to_model_messages(self) -> list[dict[str, Any]]:
        rendered: list[dict[str, Any]] = []
        if self.summary:
            rendered.append({"role": "system", "content": f"{SUMMARY_PREFIX}{self.summary}"})
        rendered.extend(select_model_messages(self.messages))
        return rendered


class MemoryStrategy(Protocol):
    def assemble(self, messages: Sequence[ChatMessage], session: Session | None = None) -> MemoryContext: ...


class BufferWindow:
    """The most recent N messages, widened so no logical turn is cut in half."""

    def __init__(self, size: int) -> None:
        self.size = size

    def assemble(self, messages: Sequence[ChatMessage], session: Session | None = None) -> MemoryContext:
        visible = _visible(messages)
        if len(visible) <= self.size:
            return MemoryContext(messages=visible)
        start = len(visible) - self.size
        while start > 0 and not _starts_turn(visible, start):
            start -= 1
        return MemoryContext(messages=visible[start:])


class SummaryBuffer:
    """Rolling summary of old turns plus the raw messages of the recent ones."""

    def __init__(self, retention_turns: int, threshold_messages: int, summary_prompt: str) -> None:
        self.retention_turns = retention_turns
        self.threshold_messages = threshold_messages
        self.summary_prompt = summary_prompt

    def assemble(self, messages: Sequence[ChatMessage], session: Session | None = None) -> MemoryContext:
        summary = session.summary if session is not None else ""
        through_id = session.summary_through_id if session is not None else 0
        raw = [message for message in _visible(messages) if (message.id or 0) > through_id]
        if len(raw) <= self.threshold_messages:
            return MemoryContext(messages=raw, summary=summary)

        turns = group_turns(raw)
        if len(turns) <= self.retention_turns:
            return MemoryContext(messages=raw, summary=summary)

        old = [message for turn in turns[: -self.retention_turns] for message in turn]
        recent = [message for turn in turns[-self.retention_turns :] for message in turn]
        request = SummaryRequest(previous_summary=summary, messages=old, through_id=old[-1].id or through_id)
        return MemoryContext(messages=recent, summary=summary, pending_summary=request)

    def summary_request(self, pending: SummaryRequest) -> ModelRequest:
        lines: list[str] = []
        if pending.previous_summary:
            lines.append(f"Existing summary:\n{pending.previous_summary}\n")
        lines.append("Conversation:")
        for message in pending.messages:
            label = message.tool_name or message.role
            lines.append(f"[{label}] {message.content}")
        return ModelRequest(
            system_prompt=self.summary_prompt,
            messages=[{"role": "user", "content": "\n".join(lines)}],
            purpose="summary",
        )

    @staticmethod
    def apply_summary(context: MemoryContext, summary_text: str) -> MemoryContext:
        return MemoryContext(messages=context.messages, summary=summary_text.strip())


def build_memory_strategy(config: MemoryConfig) -> BufferWindow | SummaryBuffer:
    match config:
        case BufferWindowConfig():
            return BufferWindow(config.size)
        case SummaryBufferConfig():
            return SummaryBuffer(config.retention_turns, config.threshold_messages, config.summary_prompt)
        case _:
            assert_never(config)


def group_turns(messages: Sequence[ChatMessage]) -> list[list[ChatMessage]]:
    """Split messages into logical turns: a user message and everything chained to it."""
    groups: list[list[ChatMessage]] = []
    for index, message in enumerate(messages):
        if not groups or _starts_turn(messages, index):
            groups.append([message])
        else:
            groups[-1].append(message)
    return groups


def select_model_messages(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
    """Render messages for the model, pairing tool results with the calls that produced them.

    A call counts as answered only when its tool result directly follows the assistant message
    that made it. Call ids may repeat across turns, so an unanswered call is never matched with
    an older result.
    """
    rendered: list[dict[str, Any]] = []
    for index, message in enumerate(messages):
        if message.role is Role.TOOL:
            continue
        if message.role is Role.ASSISTANT and message.tool_calls:
            replies = _tool_replies(messages, index)
            names = {call.id: call.name for call in message.tool_calls if call.id in replies}
            if names:
                calls = [call for call in message.tool_calls if call.id in names]
                rendered.append(
                    {"role": "assistant", "content": message.content, "tool_calls": [c.to_model() for c in calls]}
                )
                for call_id, reply in replies.items():
                    if call_id not in names:
                        continue
                    entry: dict[str, Any] = {"role": "tool", "content": reply.content, "tool_call_id": call_id}
                    if names[call_id]:
                        entry["name"] = names[call_id]
                    rendered.append(entry)
                continue
            if not message.content:
                continue
        rendered.append({"role": str(message.role), "content": message.content})
    return rendered


def _tool_replies(messages: Sequence[ChatMessage], index: int) -> dict[str, ChatMessage]:
    replies: dict[str, ChatMessage] = {}
    for message in messages[index + 1 :]:
        if message.role is not Role.TOOL:
            break
        if message.tool_call_id and message.tool_call_id not in replies:
            replies[message.tool_call_id] = message
    return replies


def _visible(messages: Sequence[ChatMessage]) -> list[ChatMessage]:
    return [message for message in messages if not message.is_system_error]


def _starts_turn(messages: Sequence[ChatMessage], index: int) -> bool:
    if index == 0:
        return True
    message = messages[index]
    if message.role is Role.USER:
        return True
    return message.turn_identifier != messages[index - 1].turn_identifier
