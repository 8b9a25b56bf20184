"""Registry of static and per-conversation dynamic tools.

Static tools live for the lifetime of the registry.  Dynamic tools are
registered for one conversation and removed by the periodic sweep once
they are older than the configured TTL.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from collections.abc import Iterable

from chatengine.config import ToolRegistryConfig
from chatengine.errors import ArgumentValidationError
from chatengine.tasks import PeriodicTask
from chatengine.tools.schemas import RegisteredTool
from chatengine.tools.schemas import Tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Name-keyed tool lookup with TTL-bound dynamic entries."""

    def __init__(
        self,
        config: ToolRegistryConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ToolRegistryConfig()
        self._clock = clock
        self._tools: dict[str, RegisteredTool] = {}
        self._sweeper = PeriodicTask(
            "tool-registry-sweep",
            self._config.sweep_interval_seconds,
            self._sweep_async,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_static(self, name: str, tool: Tool) -> None:
        if not name:
            raise ArgumentValidationError("tool name must not be empty")
        self._tools[name] = RegisteredTool(tool=tool)

    def register_dynamic(self, conversation_id: str, name: str, tool: Tool) -> None:
        if not name:
            raise ArgumentValidationError("tool name must not be empty")
        self._tools[name] = RegisteredTool(
            tool=tool,
            conversation_id=conversation_id,
            registered_at=self._clock(),
        )
        logger.debug("Registered dynamic tool %s for chat %s", name, conversation_id)

    def unregister(self, name: str, conversation_id: str | None = None) -> bool:
        """Remove *name*; with *conversation_id* only if it belongs to that conversation."""
        entry = self._tools.get(name)
        if entry is None:
            return False
        if conversation_id is not None and entry.conversation_id != conversation_id:
            return False
        del self._tools[name]
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve(self, names: Iterable[str]) -> dict[str, Tool]:
        """Return the registered tools among *names*; unknown names are skipped."""
        resolved: dict[str, Tool] = {}
        for name in names:
            entry = self._tools.get(name)
            if entry is None:
                logger.warning("Requested tool %s is not registered", name)
                continue
            resolved[name] = entry.tool
        return resolved

    def dynamic_names(self, conversation_id: str) -> list[str]:
        return [
            name
            for name, entry in self._tools.items()
            if entry.dynamic and entry.conversation_id == conversation_id
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def sweep_expired(self) -> list[str]:
        """Drop dynamic tools older than the TTL; return the removed names."""
        now = self._clock()
        ttl = self._config.dynamic_tool_ttl_seconds
        expired = [
            name
            for name, entry in self._tools.items()
            if entry.registered_at is not None and now - entry.registered_at > ttl
        ]
        for name in expired:
            del self._tools[name]
        if expired:
            logger.info("Swept %d expired dynamic tools", len(expired))
        return expired

    async def _sweep_async(self) -> None:
        self.sweep_expired()

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
