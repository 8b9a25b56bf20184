"""Tool definitions handed to the model."""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from chatengine.errors import ErrorPolicy
from chatengine.errors import ToolExecutionError
from chatengine.models import ToolContext
from chatengine.observability import track_latency

logger = logging.getLogger(__name__)

ToolExecuteFn = Callable[[dict[str, Any], ToolContext], Awaitable[str]]


@dataclass
class Tool:
    """A model-callable capability.

    ``parameters`` is a JSON schema describing the arguments object.
    """

    name: str
    description: str
    parameters: dict[str, Any]
    execute: ToolExecuteFn
    error_policy: ErrorPolicy = ErrorPolicy.degrade
    metadata: dict[str, Any] = field(default_factory=dict)

    async def run(self, args: dict[str, Any], context: ToolContext) -> str:
        """Execute the tool under its error policy.

        ``strict`` tools raise :class:`ToolExecutionError`; ``degrade``
        tools return the error text so the model can react to it.
        """
        try:
            with track_latency(f"tool.{self.metadata.get('kind', 'custom')}"):
                result = await self.execute(args, context)
        except ToolExecutionError:
            raise
        except Exception as exc:
            if self.error_policy is ErrorPolicy.strict:
                raise ToolExecutionError(self.name, str(exc)) from exc
            logger.exception("Tool %s failed in chat %s", self.name, context.chat_id)
            return f"Error executing {self.name}: {exc}"
        return result

    def to_openai_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class RegisteredTool:
    """Registry bookkeeping for one tool; dynamic tools carry an owner and a timestamp."""

    tool: Tool
    conversation_id: str | None = None
    registered_at: float | None = None

    @property
    def dynamic(self) -> bool:
        return self.registered_at is not None
