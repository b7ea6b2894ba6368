# /whatsflow/workflows/template.py

"""
Placeholder substitution for message texts, conditions and action parameters.

`{{name}}` is replaced with the string form of `variables[name]`. Unknown
names are left untouched so a partially configured flow still runs.
No nesting, no escaping.
"""

import re
from typing import Any, Mapping

PLACEHOLDER_PATTERN = re.compile(r"\{\{(.*?)\}\}")


def render_value(value: Any) -> str:
    """String form of a variable as it appears inside substituted text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def substitute(text: str, variables: Mapping[str, Any]) -> str:
    if not text:
        return text or ""

    def _replace(match: re.Match) -> str:
        name = match.group(1).strip()
        if name in variables:
            return render_value(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def find_placeholders(text: str) -> list:
    """Names referenced by `{{...}}` placeholders, in order of appearance."""
    if not text:
        return []
    return [match.strip() for match in PLACEHOLDER_PATTERN.findall(text)]
