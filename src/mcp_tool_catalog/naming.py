"""Tool name helpers: display-name construction and the raw-name matching key."""

from __future__ import annotations

import re
from typing import Optional

DEFAULT_SEPARATOR = "__"
DEFAULT_DELEGATION_PREFIX = "agent__"

_WHITESPACE_RE = re.compile(r"\s+")
_TOOL_NAME_INVALID_RE = re.compile(r"[^a-z0-9_-]")
_AGENT_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _slug_part(value: str) -> str:
    return _TOOL_NAME_INVALID_RE.sub("", _WHITESPACE_RE.sub("_", value.strip().lower()))


def slugify_tool_name(server_name: str, tool_name: str, *, separator: str = DEFAULT_SEPARATOR) -> str:
    """Build ``<server><separator><tool>`` with each part restricted to ``[a-z0-9_-]``.

    The separator is inserted verbatim so names stay splittable with
    :func:`unslugify_tool_name` under any configured separator.
    """
    return f"{_slug_part(server_name)}{separator}{_slug_part(tool_name)}"


def unslugify_tool_name(name: str, *, separator: str = DEFAULT_SEPARATOR) -> str:
    """Return the part after the last separator, or ``name`` unchanged when there is none."""
    index = name.rfind(separator)
    if index == -1:
        return name
    return name[index + len(separator):]


def raw_name_key(name: str, raw_name: Optional[str] = None, *, separator: str = DEFAULT_SEPARATOR) -> str:
    """Key used to recognise the same tool across catalog renames.

    The explicitly reported ``raw_name`` wins; otherwise the suffix after the *last*
    separator, so server names that themselves contain the separator
    (``huggingface__remote-mcp__generate_text``) still yield ``generate_text``.
    Matching is case-insensitive. This is a heuristic, not a guaranteed-unique key.
    """
    if raw_name:
        return raw_name.lower()
    return unslugify_tool_name(name, separator=separator).lower()


def delegation_tool_name(agent_name: str, *, prefix: str = DEFAULT_DELEGATION_PREFIX) -> str:
    slug = _AGENT_SLUG_RE.sub("_", agent_name.strip().lower()).strip("_")
    return f"{prefix}{slug or 'agent'}"
