"""Engine data models — completion options, steps, usage and turn results."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from chatengine.models import Artifact
from chatengine.models import Source


class TurnPhase(str, Enum):
    """Lifecycle of one model turn."""

    started = "started"
    streaming = "streaming"
    step_boundary = "step_boundary"
    finalizing = "finalizing"
    done = "done"
    failed = "failed"


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    tool_call_id: str
    name: str
    result: str


class StepResult(BaseModel):
    """What the provider reports at the end of one request/response cycle."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    finish_reason: str | None = None
    usage: Usage = Field(default_factory=Usage)


class CompletionOptions(BaseModel):
    model: str | None = Field(
        default=None,
        description="Model override; adapters fall back to their configured model.",
    )
    temperature: float | None = None
    max_tokens: int | None = None
    max_steps: int | None = Field(default=None, ge=1)


class TurnMeta(BaseModel):
    used_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tools_used: list[str] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    steps: int = 0


class CompletionResult(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    text: str
    model: str
    meta: TurnMeta = Field(default_factory=TurnMeta)
