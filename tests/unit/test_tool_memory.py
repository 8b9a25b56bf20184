"""Unit tests for the per-conversation tool memory."""

from __future__ import annotations

from chatengine.models import Artifact
from chatengine.models import Source
from chatengine.tools import ToolMemory


class TestToolMemory:
    def test_record_and_read(self):
        memory = ToolMemory()
        source = Source(type="url", label="https://a.example")
        memory.record("chat-1", "parse-url-1", sources=source)
        memory.record(
            "chat-1",
            "parse-url-1",
            sources=[Source(type="url", label="https://b.example")],
            artifacts=Artifact(type="image", url="https://a.example/x.png"),
        )

        entries = memory.read("chat-1")

        entry = entries["parse-url-1"]
        assert [s.label for s in entry.used_sources] == [
            "https://a.example",
            "https://b.example",
        ]
        assert entry.used_artifacts[0].type == "image"

    def test_conversations_are_isolated(self):
        memory = ToolMemory()
        memory.record("chat-1", "t", sources=Source(type="url", label="a"))
        assert memory.read("chat-2") == {}

    def test_read_returns_copies(self):
        memory = ToolMemory()
        memory.record("chat-1", "t", sources=Source(type="url", label="a"))

        memory.read("chat-1")["t"].used_sources.clear()

        assert len(memory.read("chat-1")["t"].used_sources) == 1

    def test_clear(self):
        memory = ToolMemory()
        memory.record("chat-1", "t", sources=Source(type="url", label="a"))
        memory.clear("chat-1")
        memory.clear("unknown")
        assert memory.read("chat-1") == {}
