"""Application-level exception types for Hopline."""

from __future__ import annotations


class HoplineError(Exception):
    """Base exception for Hopline."""


class ConfigurationError(HoplineError):
    """Raised when settings or agent configuration are invalid."""


class SessionNotFoundError(HoplineError):
    """Raised when a chat session id does not exist."""


class EventValidationError(HoplineError):
    """Raised when an orchestration event is malformed."""


class EnqueueError(HoplineError):
    """Raised when a hop cannot be scheduled."""


class ModelCallError(HoplineError):
    """Raised when the upstream model call fails after all retries."""


class ActionExecutionError(HoplineError):
    """Raised by an action implementation that failed."""


class PrerequisiteNotMetError(HoplineError):
    """Raised when a capability runs before its prerequisites."""

    def __init__(self, capability: str, missing: list[str]) -> None:
        super().__init__(f"prerequisites not met for {capability}: {', '.join(missing)}")
        self.capability = capability
        self.missing = missing


class UnknownCapabilityError(HoplineError):
    """Raised when the model asks for a function the agent does not expose."""


class StaleTurnError(HoplineError):
    """Raised when a hop belongs to a superseded turn."""


class DuplicateStepError(HoplineError):
    """Raised when a step with the same sequence number already exists."""


class OutOfOrderStepError(HoplineError):
    """Raised when a hop does not directly follow the last persisted step."""


class InvalidTransitionError(HoplineError):
    """Raised when a turn status change is not allowed."""
