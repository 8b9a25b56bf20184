"""URL reading tool."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from chatengine.errors import ErrorPolicy
from chatengine.models import Source
from chatengine.models import ToolContext
from chatengine.services import UrlFetcher
from chatengine.tools.memory import ToolMemory
from chatengine.tools.schemas import Tool

logger = logging.getLogger(__name__)


def create_url_tool(urls: UrlFetcher, memory: ToolMemory) -> Tool:
    """A ``parse-url-<id>`` tool returning a page as markdown and citing it."""
    name = f"parse-url-{uuid.uuid4().hex[:10]}"

    async def execute(args: dict[str, Any], context: ToolContext) -> str:
        url = str(args.get("url") or "")
        logger.info("Tool %s fetching %s", name, url)
        try:
            markdown = await urls.fetch_markdown(url)
        except Exception as exc:
            logger.exception("Error fetching URL content")
            return f"Error fetching URL content: {exc}"
        memory.record(
            context.chat_id,
            name,
            sources=Source(type="url", label=url, url=url, external=True),
        )
        return markdown

    return Tool(
        name=name,
        description=(
            "Can parse a URL and return its content as markdown. Can be used "
            "when full URLs are given in the prompt."
        ),
        parameters={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to parse"},
            },
            "required": ["url"],
        },
        execute=execute,
        error_policy=ErrorPolicy.degrade,
        metadata={"kind": "url"},
    )
