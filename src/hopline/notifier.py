"""Transient progress notifications."""

from __future__ import annotations

from loguru import logger

from hopline.bus import BusProtocol
from hopline.events import TransientMessage


class TransientNotifier:
    """Publishes best-effort progress strings on the transient channel.

    Delivery may repeat; message ids are derived from the hop so repeats carry the same id.
    Failures are logged and never reach the turn.
    """

    def __init__(self, bus: BusProtocol) -> None:
        self._bus = bus

    @staticmethod
    def message_id(turn_identifier: str, sequence_number: int, suffix: str) -> str:
        return f"{turn_identifier}:{sequence_number}:{suffix}"

    async def notify(self, session_id: str, message_id: str, content: str, *, enabled: bool = True) -> bool:
        if not enabled:
            return False
        try:
            message = TransientMessage(session_id=session_id, message_id=message_id, content=content)
            await self._bus.publish_transient(message)
        except Exception:
            logger.opt(exception=True).warning(
                "transient.publish_failed session={} message_id={}", session_id, message_id
            )
            return False
        return True
