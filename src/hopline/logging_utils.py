"""Runtime logging helpers."""

from __future__ import annotations

import contextlib
import os
import sys
from collections.abc import Iterator
from contextvars import ContextVar
from logging import Handler
from typing import Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "cli"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "cli": "{level} | {extra[turn]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {extra[turn]} | {message}",
}
_CONFIGURED_PROFILE: LogProfile | None = None
_turn_context: ContextVar[str] = ContextVar("turn", default="-")


def current_turn() -> str:
    """Get the identifier of the turn whose hop is running, or '-'."""
    return _turn_context.get()


@contextlib.contextmanager
def turn_scope(turn_identifier: str) -> Iterator[None]:
    token = _turn_context.set(turn_identifier)
    try:
        yield
    finally:
        _turn_context.reset(token)


def _build_cli_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Configure process-level logging once."""

    def inject_context(record: loguru.Record) -> None:
        record["extra"].setdefault("turn", current_turn())

    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE:
        return

    level = (level or os.getenv("HOPLINE_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    if profile == "cli":
        logger.add(
            _build_cli_handler(),
            level=level,
            format="{message}",
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    logger.configure(patcher=inject_context)
    _CONFIGURED_PROFILE = profile
