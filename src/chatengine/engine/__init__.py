"""Engine domain — streamed completions, provider adapters and live progress."""

from chatengine.engine.llm_adapters import CompletionStream
from chatengine.engine.llm_adapters import NoopLLMAdapter
from chatengine.engine.llm_adapters import OpenAICompatibleLLMAdapter
from chatengine.engine.llm_adapters import StreamingLLMAdapter
from chatengine.engine.llm_adapters import build_llm_adapter
from chatengine.engine.orchestrator import CompletionOrchestrator
from chatengine.engine.orchestrator import strip_media_references
from chatengine.engine.progress import LiveProgress
from chatengine.engine.progress import LiveProgressCache
from chatengine.engine.schemas import CompletionOptions
from chatengine.engine.schemas import CompletionResult
from chatengine.engine.schemas import StepResult
from chatengine.engine.schemas import TurnMeta
from chatengine.engine.schemas import TurnPhase

__all__ = [
    "CompletionOptions",
    "CompletionOrchestrator",
    "CompletionResult",
    "CompletionStream",
    "LiveProgress",
    "LiveProgressCache",
    "NoopLLMAdapter",
    "OpenAICompatibleLLMAdapter",
    "StepResult",
    "StreamingLLMAdapter",
    "TurnMeta",
    "TurnPhase",
    "build_llm_adapter",
    "strip_media_references",
]
