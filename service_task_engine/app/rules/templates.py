"""
{{path}} placeholder rendering for rule titles and descriptions.
"""

import json
import re
from typing import Any, Mapping

from ..snapshot import MISSING, resolve_path

PLACEHOLDER = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")


def format_value(value: Any) -> str:
    """Render a resolved value as template text."""
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str, separators=(",", ":"))
    return str(value)


def render(template: str, entity: Mapping) -> str:
    """Substitute every placeholder; unresolved paths become empty strings."""
    if not template:
        return ""
    return PLACEHOLDER.sub(lambda m: format_value(resolve_path(entity, m.group(1))), template)
