"""``{{variable}}`` substitution in step configuration."""

from __future__ import annotations

import re
from typing import Any, Mapping

from .conditions import MISSING, resolve_path

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render(value: Any, variables: Mapping[str, Any]) -> Any:
    """Resolve placeholders in ``value`` against ``variables``.

    A string that is exactly one placeholder keeps the variable's type, so
    ``"{{amount}}"`` renders to ``1200`` rather than ``"1200"``. Placeholders
    embedded in longer strings are stringified; unknown variables render as
    an empty string. Dicts and lists are rendered recursively.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            resolved = resolve_path(variables, whole.group(1))
            return "" if resolved is MISSING or resolved is None else resolved
        return _PLACEHOLDER.sub(lambda m: _stringify(variables, m.group(1)), value)
    if isinstance(value, Mapping):
        return {key: render(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, variables) for item in value]
    return value


def _stringify(variables: Mapping[str, Any], path: str) -> str:
    resolved = resolve_path(variables, path)
    if resolved is MISSING or resolved is None:
        return ""
    return str(resolved)


def resolve_templates(config: Mapping[str, Any], variables: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``config`` with every placeholder resolved."""
    return {key: render(value, variables) for key, value in config.items()}
