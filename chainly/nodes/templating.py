"""Template rendering against the workflow context.

Supports ``{{ path.to.value }}``, list indexes (``{{ items.0.id }}``),
bracket keys (``{{ headers["x-request-id"] }}``) and the ``json`` helper
(``{{ json webhook.body }}``). Missing paths render as an empty string.
"""

import json
import re
from typing import Any

PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_SEGMENT = re.compile(r"""\[\s*["']([^"']+)["']\s*\]|\[(\d+)\]|([^.\[\]]+)""")
_MISSING = object()


class TemplateError(ValueError):
    """Template expression could not be parsed."""

    pass


def _split_path(path: str) -> list[str]:
    segments = [
        next(group for group in match.groups() if group is not None).strip()
        for match in _SEGMENT.finditer(path.strip())
    ]
    segments = [segment for segment in segments if segment]
    if not segments:
        raise TemplateError(f"Empty template expression: '{path}'")
    return segments


def resolve_path(context: Any, path: str) -> Any:
    """Look up a dotted path in the context, returning None if absent."""
    value = _lookup(context, path)
    return None if value is _MISSING else value


def _lookup(context: Any, path: str) -> Any:
    current = context
    for segment in _split_path(path):
        if isinstance(current, dict):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _evaluate(expression: str, context: Any) -> Any:
    helper, _, argument = expression.partition(" ")
    if helper == "json" and argument.strip():
        value = resolve_path(context, argument)
        return json.dumps(value, indent=2, default=str)
    return resolve_path(context, expression)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(template: str, context: dict[str, Any]) -> str:
    """Render every placeholder in ``template`` as text."""
    return PLACEHOLDER.sub(lambda m: _stringify(_evaluate(m.group(1), context)), template)


def evaluate_value(value: str, context: dict[str, Any]) -> Any:
    """Evaluate a field value.

    A value that is exactly one placeholder keeps the referenced value's
    type; a value with no placeholders is parsed as JSON when possible;
    anything else is rendered as text.
    """
    if not PLACEHOLDER.search(value):
        try:
            return json.loads(value)
        except ValueError:
            return value

    single = PLACEHOLDER.fullmatch(value.strip())
    if single:
        return _evaluate(single.group(1), context)

    return render_template(value, context)
