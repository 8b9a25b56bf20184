"""Tool domain — registry, turn-scoped memory and built-in tools."""

from chatengine.tools.knowledge import KnowledgeSelection
from chatengine.tools.knowledge import create_knowledge_tool
from chatengine.tools.knowledge import create_query_knowledge_base_tool
from chatengine.tools.knowledge import register_dynamic_knowledge_tool
from chatengine.tools.memory import ToolMemory
from chatengine.tools.memory import ToolMemoryEntry
from chatengine.tools.registry import ToolRegistry
from chatengine.tools.schemas import Tool
from chatengine.tools.url import create_url_tool

__all__ = [
    "KnowledgeSelection",
    "Tool",
    "ToolMemory",
    "ToolMemoryEntry",
    "ToolRegistry",
    "create_knowledge_tool",
    "create_query_knowledge_base_tool",
    "create_url_tool",
    "register_dynamic_knowledge_tool",
]
