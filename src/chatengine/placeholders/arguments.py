"""Directive argument parsing.

Turns the body of a ``{{#name key=value ...}}`` block into an argument
dictionary, plus typed getters and the comma-separated list parser used
for multi-value arguments such as filters.
"""

from __future__ import annotations

import math
import re

ArgumentValue = str | int | float | bool
ArgumentDict = dict[str, ArgumentValue]

# key=(double-quoted | single-quoted | bare) with bare or single-quoted keys
_ARGUMENT_RE = re.compile(r"""([\w:.\-]+|'[^']+')=("[^"]*"|'[^']*'|\S+)""")
_SNAKE_RE = re.compile(r"_([a-z])")
# Items of a comma separated list: "quoted" | 'quoted' | bare (no leading space/quote)
_LIST_ITEM_RE = re.compile(r""""([^"]*)"|'([^']*)'|([^,\s'"][^,]*)""")


def _coerce(value: str) -> ArgumentValue:
    """Try boolean, then number, then fall back to the raw string."""
    if value in ("true", "false"):
        return value == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        number = float(value)
    except ValueError:
        return value
    if not math.isfinite(number):
        return value
    return number


def snake_to_camel(key: str) -> str:
    return _SNAKE_RE.sub(lambda m: m.group(1).upper(), key)


def directive_body(raw: str, selector: str) -> str | None:
    """Return the argument text of the first ``{{#selector ...}}`` in *raw*."""
    match = re.search(r"\{\{#" + re.escape(selector) + r"\s*([^}]*)\}\}", raw)
    if match is None:
        return None
    return match.group(1).strip()


def parse_arguments(raw: str, selector: str) -> ArgumentDict:
    """Parse ``{{#selector key=value ...}}`` into an argument dictionary.

    Bare keys are converted from snake_case to camelCase; single-quoted
    keys are kept verbatim.  Quoted values stay strings, bare values are
    coerced to bool or number when they look like one.

    >>> parse_arguments("{{#sel key_one=val1 'key two'=\\"value 2\\" n=9}}", "sel")
    {'keyOne': 'val1', 'key two': 'value 2', 'n': 9}
    """
    body = directive_body(raw, selector)
    if not body:
        return {}

    args: ArgumentDict = {}
    for key, value in _ARGUMENT_RE.findall(body):
        if key.startswith("'") and key.endswith("'"):
            key = key[1:-1]
        else:
            key = snake_to_camel(key)

        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            args[key] = value[1:-1]
        else:
            args[key] = _coerce(value)
    return args


def parse_list(text: str | None) -> list[str]:
    """Split a comma separated list whose items may be quoted.

    Quoted items are kept exactly (commas and spaces included); bare items
    are trimmed.

    >>> parse_list('"value, one", \\'value, two\\', three ')
    ['value, one', 'value, two', 'three']
    """
    if not text:
        return []

    items: list[str] = []
    for double, single, bare in _LIST_ITEM_RE.findall(text):
        # findall yields "" for groups that did not participate
        match_text = double or single or bare
        if bare and not (double or single):
            items.append(bare.strip())
        else:
            items.append(match_text)
    return items


# ---------------------------------------------------------------------------
# Typed getters
# ---------------------------------------------------------------------------


def get_string_argument(
    args: ArgumentDict, name: str, default: str | None = None
) -> str | None:
    value = args.get(name)
    return value if isinstance(value, str) else default


def get_string_list_argument(
    args: ArgumentDict, name: str, default: list[str] | None = None
) -> list[str] | None:
    value = args.get(name)
    if isinstance(value, str):
        return value.split(",")
    # a bare numeric id such as id=42 was coerced; keep it as one item
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return [str(value)]
    return default


def get_bool_argument(
    args: ArgumentDict, name: str, default: bool | None = None
) -> bool | None:
    value = args.get(name)
    return value if isinstance(value, bool) else default


def get_number_argument(
    args: ArgumentDict, name: str, default: int | float | None = None
) -> int | float | None:
    value = args.get(name)
    if isinstance(value, bool):
        return default
    return value if isinstance(value, (int, float)) else default
