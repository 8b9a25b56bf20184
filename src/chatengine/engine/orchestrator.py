"""Completion orchestrator — drives one streamed model turn.

A turn moves through ``TurnPhase.started -> streaming -> step_boundary*
-> finalizing -> done``.  Text deltas and step boundaries are mirrored to
the live progress cache; provenance left by tools in the tool memory is
folded into the result at the end of the turn.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from chatengine.config import OrchestratorConfig
from chatengine.engine.llm_adapters import StreamingLLMAdapter
from chatengine.engine.progress import LiveProgressCache
from chatengine.engine.progress import ProgressMeta
from chatengine.engine.schemas import CompletionOptions
from chatengine.engine.schemas import CompletionResult
from chatengine.engine.schemas import StepResult
from chatengine.engine.schemas import TurnMeta
from chatengine.engine.schemas import TurnPhase
from chatengine.engine.schemas import Usage
from chatengine.errors import ChatEngineError
from chatengine.errors import ProviderError
from chatengine.models import Artifact
from chatengine.models import SessionContext
from chatengine.models import Source
from chatengine.models import dedupe_sources
from chatengine.observability import track_latency
from chatengine.sessions.schemas import ChatMessage
from chatengine.tools.memory import ToolMemory
from chatengine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_MARKDOWN_IMAGE_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_HTML_IMAGE_RE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_DATA_URI_RE = re.compile(r"data:[\w.+-]+/[\w.+-]+;base64,[A-Za-z0-9+/=]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def strip_media_references(text: str) -> str:
    """Remove embedded images and inline data URIs from model output."""
    text = _MARKDOWN_IMAGE_RE.sub("", text)
    text = _HTML_IMAGE_RE.sub("", text)
    text = _DATA_URI_RE.sub("", text)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


class _TurnState:
    """Accumulators of one running turn."""

    def __init__(self) -> None:
        self.phase = TurnPhase.started
        self.text = ""
        self.steps: list[StepResult] = []
        self.tools_used: list[str] = []
        self.sources: list[Source] = []
        self.artifacts: list[Artifact] = []

    @property
    def usage(self) -> Usage:
        return self.steps[-1].usage if self.steps else Usage()


class CompletionOrchestrator:
    """Run a streamed completion against the tools of a conversation."""

    def __init__(
        self,
        adapter: StreamingLLMAdapter,
        registry: ToolRegistry,
        memory: ToolMemory,
        progress: LiveProgressCache,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._adapter = adapter
        self._registry = registry
        self._memory = memory
        self._progress = progress
        self._config = config or OrchestratorConfig()
        self._phases: dict[str, TurnPhase] = {}

    def phase(self, chat_id: str) -> TurnPhase | None:
        """Phase of the latest turn of *chat_id* run by this orchestrator."""
        return self._phases.get(chat_id)

    def forget(self, chat_id: str) -> None:
        """Drop the phase kept for *chat_id*."""
        self._phases.pop(chat_id, None)

    def _enter(self, chat_id: str, state: _TurnState, phase: TurnPhase) -> None:
        state.phase = phase
        self._phases[chat_id] = phase

    @property
    def adapter(self) -> StreamingLLMAdapter:
        return self._adapter

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        context: SessionContext,
        tool_names: Sequence[str] = (),
        options: CompletionOptions | None = None,
    ) -> CompletionResult:
        """Stream one turn and return its final text, usage and provenance.

        Raises ProviderError when the provider fails.  Errors raised by
        strict tools and directives propagate unchanged.
        """
        options = options or CompletionOptions()
        chat_id = context.chat_id
        state = _TurnState()
        self._enter(chat_id, state, TurnPhase.started)

        self._progress.clear_and_start(chat_id)
        self._memory.clear(chat_id)
        tools = self._registry.resolve(tool_names)

        def on_step(step: StepResult) -> None:
            self._enter(chat_id, state, TurnPhase.step_boundary)
            state.steps.append(step)
            for call in step.tool_calls:
                if call.name not in state.tools_used:
                    state.tools_used.append(call.name)
            logger.debug(
                "Chat %s step %d finished (%s, %d tool calls)",
                chat_id,
                len(state.steps),
                step.finish_reason,
                len(step.tool_calls),
            )
            self._progress.update(
                chat_id,
                text=state.text,
                complete=False,
                meta=ProgressMeta(tools_used=list(state.tools_used)),
            )

        with track_latency("orchestrator.complete"):
            try:
                stream = self._adapter.stream(
                    [m.to_provider_message() for m in messages],
                    tools=tools,
                    options=options,
                    context=context,
                    on_step=on_step,
                )
                async for delta in stream.text_stream:
                    if state.phase is not TurnPhase.streaming:
                        self._enter(chat_id, state, TurnPhase.streaming)
                    state.text += delta
                    self._progress.update(chat_id, text=state.text, complete=False)

                self._enter(chat_id, state, TurnPhase.finalizing)
                state.sources.extend(await stream.sources())
            except ChatEngineError:
                self._enter(chat_id, state, TurnPhase.failed)
                raise
            except Exception as exc:
                self._enter(chat_id, state, TurnPhase.failed)
                logger.exception("Completion failed for chat %s", chat_id)
                raise ProviderError(f"completion failed: {exc}") from exc

            return self._finalize(chat_id, state, options)

    def _finalize(
        self,
        chat_id: str,
        state: _TurnState,
        options: CompletionOptions,
    ) -> CompletionResult:
        for entry in self._memory.read(chat_id).values():
            state.sources.extend(entry.used_sources)
            state.artifacts.extend(entry.used_artifacts)
        self._memory.clear(chat_id)

        sources = dedupe_sources(state.sources)
        text = strip_media_references(state.text)
        usage = state.usage

        self._progress.update(
            chat_id,
            text=text,
            complete=True,
            meta=ProgressMeta(
                tools_used=state.tools_used,
                sources=sources,
                artifacts=state.artifacts,
            ),
        )
        self._enter(chat_id, state, TurnPhase.done)
        # the phase outlives the turn only as long as its progress entry
        self._progress.schedule_clear(
            chat_id, self._config.progress_clear_delay_seconds, on_clear=self.forget
        )

        logger.info(
            "Chat %s completed in %d steps (%d tokens, tools=%s)",
            chat_id,
            len(state.steps),
            usage.total_tokens,
            ",".join(state.tools_used) or "-",
        )
        return CompletionResult(
            text=text,
            model=options.model or self._adapter.model,
            meta=TurnMeta(
                used_tokens=usage.total_tokens,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                tools_used=list(state.tools_used),
                sources=sources,
                artifacts=list(state.artifacts),
                steps=len(state.steps),
            ),
        )
