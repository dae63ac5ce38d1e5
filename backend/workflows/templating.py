"""``{{ dotted.path }}`` substitution for action configs."""

import re
from typing import Any

from workflows.conditions import resolve_path

TOKEN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def render_template(template: Any, context: Any) -> Any:
    """
    Replace every ``{{path}}`` token with the string form of its context value.

    Unresolved paths render as an empty string. Dicts, lists and tuples are
    rendered recursively; other non-string values pass through untouched.
    """
    if isinstance(template, str):
        return TOKEN.sub(lambda match: _stringify(resolve_path(context, match.group(1))), template)
    if isinstance(template, dict):
        return {key: render_template(value, context) for key, value in template.items()}
    if isinstance(template, (list, tuple)):
        return type(template)(render_template(value, context) for value in template)
    return template


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
