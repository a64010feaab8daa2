"""Template expansion for definitions.

Definition templates are plain manifest dictionaries whose string leaves may
hold placeholders:

    {{ parameter.<name> }}     a bound parameter of the component/trait
    {{ context.<key> }}        render context: name, appName, namespace

A string that is exactly one placeholder becomes the raw value, so
``replicas: "{{ parameter.replicas }}"`` stays an int.  Placeholders embedded
in longer strings are interpolated with ``str()``.  A mapping entry whose
whole-placeholder value resolves to ``None`` is dropped, which is how optional
parameters leave no trace in the output.

Dotted paths walk into object parameters: ``{{ parameter.env.LOG_LEVEL }}``.
"""

from __future__ import annotations

import copy
import re
from typing import Any

from appspine.core.errors import TemplateError

_PLACEHOLDER = re.compile(
    r"\{\{\s*(parameter|context)\.([A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*)*)\s*\}\}"
)

_DROP = object()


def expand(template: Any, parameters: dict[str, Any], context: dict[str, Any]) -> Any:
    """Expand every placeholder in *template*.

    Raises:
        TemplateError: If a placeholder references an unknown parameter or
            context key, or interpolates a non-scalar into a string.
    """
    scopes = {"parameter": parameters, "context": context}
    result = _expand(template, scopes)
    return None if result is _DROP else result


def _expand(node: Any, scopes: dict[str, dict[str, Any]]) -> Any:
    if isinstance(node, dict):
        out = {}
        for key, value in node.items():
            expanded = _expand(value, scopes)
            if expanded is _DROP:
                continue
            out[key] = expanded
        return out
    if isinstance(node, list):
        return [item for item in (_expand(v, scopes) for v in node) if item is not _DROP]
    if isinstance(node, str):
        return _expand_string(node, scopes)
    return node


def _expand_string(text: str, scopes: dict[str, dict[str, Any]]) -> Any:
    whole = _PLACEHOLDER.fullmatch(text.strip())
    if whole:
        value = _lookup(scopes, whole.group(1), whole.group(2))
        return _DROP if value is None else copy.deepcopy(value)

    def substitute(match: re.Match[str]) -> str:
        value = _lookup(scopes, match.group(1), match.group(2))
        if value is None:
            raise TemplateError(
                f"placeholder {match.group(0)!r} is unset and cannot be interpolated"
            )
        if isinstance(value, (dict, list)):
            raise TemplateError(
                f"placeholder {match.group(0)!r} resolves to a {type(value).__name__}, "
                "which cannot be interpolated into a string"
            )
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    return _PLACEHOLDER.sub(substitute, text)


def _lookup(scopes: dict[str, dict[str, Any]], scope: str, path: str) -> Any:
    parts = path.split(".")
    cur: Any = scopes[scope]
    for i, part in enumerate(parts):
        if not isinstance(cur, dict) or part not in cur:
            if i > 0 and isinstance(cur, dict):
                # Missing key inside a bound object parameter behaves like an unset optional.
                return None
            missing = ".".join(parts[: i + 1])
            raise TemplateError(f"template references undefined {scope} {missing!r}")
        cur = cur[part]
    return cur
