"""Two-pass template resolution over chat messages.

Pass one substitutes ``{{ variable }}`` placeholders.  Pass two finds
``{{#directive ...}}`` blocks and replaces each with the content returned
by the directive's resolver, collecting any provenance it attaches.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Mapping
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from typing import Any

from chatengine.errors import ArgumentValidationError
from chatengine.errors import ErrorPolicy
from chatengine.models import SessionContext
from chatengine.models import Source
from chatengine.observability import track_latency
from chatengine.placeholders.arguments import ArgumentDict
from chatengine.placeholders.arguments import parse_arguments
from chatengine.sessions.schemas import ChatMessage

logger = logging.getLogger(__name__)

_VARIABLE_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass
class DirectiveResult:
    """What a directive resolver hands back for one matched block."""

    content: str
    skip_rest_of_message: bool = False
    sources: list[Source] = field(default_factory=list)


DirectiveResolverFn = Callable[
    [str, ArgumentDict, Mapping[str, Any], SessionContext],
    Awaitable[DirectiveResult],
]


@dataclass(frozen=True)
class Directive:
    """A named ``{{#name ...}}`` block and the function that resolves it.

    ``required_arguments`` is a list of alternatives: the arguments are
    satisfied when every key of at least one alternative is present.
    """

    name: str
    resolver: DirectiveResolverFn
    required_arguments: tuple[tuple[str, ...], ...] = ()
    error_policy: ErrorPolicy = ErrorPolicy.strict
    description: str = ""

    @property
    def pattern(self) -> re.Pattern[str]:
        return re.compile(r"\{\{#" + re.escape(self.name) + r"(?=[\s}])[^}]*\}\}")

    def missing_arguments(self, args: ArgumentDict) -> list[str]:
        if not self.required_arguments:
            return []
        best: list[str] | None = None
        for alternative in self.required_arguments:
            missing = [key for key in alternative if args.get(key) in (None, "")]
            if not missing:
                return []
            if best is None or len(missing) < len(best):
                best = missing
        return best or []


@dataclass
class ResolvedMessages:
    messages: list[ChatMessage]
    sources: list[Source] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------


def _render_variable(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "\n\n".join(f'"{item}"' for item in value)
    return str(value)


def substitute_variables(text: str, variables: Mapping[str, Any]) -> str:
    """Replace every ``{{ name }}`` whose variable is set; leave the rest verbatim."""

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        if value is None:
            logger.debug("No replacement for %r", match.group(0))
            return match.group(0)
        return _render_variable(value)

    return _VARIABLE_RE.sub(_replace, text)


def replace_variables(
    messages: Iterable[ChatMessage], variables: Mapping[str, Any]
) -> list[ChatMessage]:
    """Variable substitution over string message contents (copies)."""
    replaced: list[ChatMessage] = []
    for message in messages:
        copy = message.model_copy(deep=True)
        if isinstance(copy.content, str):
            copy.content = substitute_variables(copy.content, variables)
        replaced.append(copy)
    return replaced


# ---------------------------------------------------------------------------
# Directives
# ---------------------------------------------------------------------------


class DirectiveResolver:
    """Dispatch table of directives, applied in registration order."""

    def __init__(self, directives: Iterable[Directive] = ()) -> None:
        self._directives: dict[str, Directive] = {}
        for directive in directives:
            self.register(directive)

    def register(
        self, directive: Directive, *, error_policy: ErrorPolicy | None = None
    ) -> None:
        """Add *directive*; *error_policy* overrides its default policy."""
        if error_policy is not None:
            directive = replace(directive, error_policy=error_policy)
        self._directives[directive.name] = directive

    @property
    def names(self) -> list[str]:
        return list(self._directives)

    def get(self, name: str) -> Directive | None:
        return self._directives.get(name)

    async def resolve(
        self,
        messages: Sequence[ChatMessage],
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> ResolvedMessages:
        """Resolve directives in every string message.

        A resolver that asks to skip the rest of the message stops further
        directive processing for that message only.
        """
        result = ResolvedMessages(messages=[])
        with track_latency("placeholders.resolve"):
            for message in messages:
                copy = message.model_copy(deep=True)
                if isinstance(copy.content, str) and "{{#" in copy.content:
                    content, sources = await self._resolve_text(
                        copy.content, variables, context
                    )
                    copy.content = content
                    if sources:
                        copy.meta.sources = [*(copy.meta.sources or []), *sources]
                        result.sources.extend(sources)
                result.messages.append(copy)
        return result

    async def _resolve_text(
        self,
        text: str,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> tuple[str, list[Source]]:
        sources: list[Source] = []
        for directive in self._directives.values():
            for match in directive.pattern.findall(text):
                outcome = await self._run(directive, match, variables, context)
                # replace only the first occurrence; duplicates resolve in turn
                text = text.replace(match, outcome.content, 1)
                sources.extend(outcome.sources)
                if outcome.skip_rest_of_message:
                    logger.debug(
                        "Directive %s skipped the rest of the message", directive.name
                    )
                    return text, sources
        return text, sources

    async def _run(
        self,
        directive: Directive,
        match: str,
        variables: Mapping[str, Any],
        context: SessionContext,
    ) -> DirectiveResult:
        args = parse_arguments(match, directive.name)
        missing = directive.missing_arguments(args)
        if missing:
            message = (
                f"{' and '.join(missing)} parameter is required for "
                f"{directive.name} placeholder"
            )
            if directive.error_policy is ErrorPolicy.strict:
                raise ArgumentValidationError(message)
            logger.warning("%s; skipping block", message)
            return DirectiveResult(content="", skip_rest_of_message=True)

        if directive.error_policy is ErrorPolicy.strict:
            return await directive.resolver(match, args, variables, context)

        try:
            return await directive.resolver(match, args, variables, context)
        except Exception:
            logger.exception(
                "Directive %s failed in chat %s; degrading to empty content",
                directive.name,
                context.chat_id,
            )
            return DirectiveResult(content="", skip_rest_of_message=True)
