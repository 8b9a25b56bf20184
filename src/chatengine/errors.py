"""Error taxonomy shared by every layer of the engine."""

from __future__ import annotations

from enum import Enum


class ErrorPolicy(str, Enum):
    """How a directive or tool reacts to its own failures.

    ``strict`` raises to the caller; ``degrade`` swallows the failure and
    yields an empty (directive) or descriptive (tool) result instead.
    """

    strict = "strict"
    degrade = "degrade"


class ChatEngineError(Exception):
    """Base class for all engine errors."""

    error_code = "internal_error"


class ArgumentValidationError(ChatEngineError):
    """A request or directive is missing a required argument."""

    error_code = "validation_error"


class NotFoundError(ChatEngineError):
    """An unknown conversation, message, tool or referenced record."""

    error_code = "not_found"


class SecurityViolationError(ChatEngineError):
    """Attempted change of an immutable field or cross-tenant access."""

    error_code = "security_violation"


class ProviderError(ChatEngineError):
    """The streaming completion call or a provider dependency failed."""

    error_code = "provider_error"


class ToolExecutionError(ChatEngineError):
    """A strict tool failed and aborted the current step."""

    error_code = "tool_execution_error"

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"Tool {tool_name!r} failed: {message}")
        self.tool_name = tool_name
