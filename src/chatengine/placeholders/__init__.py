"""Placeholder resolution — ``{{ variable }}`` substitution and ``{{#directive}}`` blocks."""

from chatengine.placeholders.arguments import parse_arguments
from chatengine.placeholders.arguments import parse_list
from chatengine.placeholders.directives import build_default_directives
from chatengine.placeholders.replacer import Directive
from chatengine.placeholders.replacer import DirectiveResolver
from chatengine.placeholders.replacer import DirectiveResult
from chatengine.placeholders.replacer import ResolvedMessages
from chatengine.placeholders.replacer import replace_variables
from chatengine.placeholders.replacer import substitute_variables

__all__ = [
    "Directive",
    "DirectiveResolver",
    "DirectiveResult",
    "ResolvedMessages",
    "build_default_directives",
    "parse_arguments",
    "parse_list",
    "replace_variables",
    "substitute_variables",
]
