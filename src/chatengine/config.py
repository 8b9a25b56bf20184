"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing; plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer precisely, structure longer answers "
    "with Markdown headings and lists, and say so when you do not know "
    "something."
)


@dataclass(frozen=True)
class LLMConfig:
    """LLM provider settings used by the completion orchestrator."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_seconds: float = 60.0
    max_steps: int = 5


@dataclass(frozen=True)
class SessionStoreConfig:
    """Lifetime and housekeeping settings for stored chat sessions."""

    key_prefix: str = "chatengine"
    max_age_hours: float = 48.0
    cleanup_interval_seconds: float = 3600.0

    @property
    def max_age_seconds(self) -> int:
        return max(int(self.max_age_hours * 3600), 1)


@dataclass(frozen=True)
class ToolRegistryConfig:
    """TTL and sweep cadence for per-conversation dynamic tools."""

    dynamic_tool_ttl_seconds: float = 3600.0
    sweep_interval_seconds: float = 3600.0


@dataclass(frozen=True)
class OrchestratorConfig:
    """Turn-level behaviour of the completion orchestrator."""

    progress_clear_delay_seconds: float = 5.0
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    # Token budget used by the adaptive knowledge tool
    context_window_tokens: int = 128_000
    max_output_tokens: int = 4096
