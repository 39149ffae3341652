"""
Variable interpolation for flow action configs.
Replaces {{variableName}} placeholders with values from the conversation's variable store.
"""
import json
import re
from typing import Any, Dict

# Maximum recursion depth for object interpolation
MAX_INTERPOLATION_DEPTH = 100

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value)
        except (TypeError, ValueError):
            return "[Object]"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def interpolate_variables(template: str, variables: Dict[str, Any]) -> str:
    """
    Replace every {{name}} in template with the rendered variable value.
    Unknown variables render as an empty string.
    """
    if not template or "{{" not in template:
        return template
    return PLACEHOLDER_PATTERN.sub(lambda match: _render_value(variables.get(match.group(1))), template)


def interpolate_object_variables(obj: Any, variables: Dict[str, Any], depth: int = 0) -> Any:
    """
    Interpolate all string values inside dicts and lists, e.g. HTTP headers and JSON bodies.
    """
    if depth > MAX_INTERPOLATION_DEPTH:
        return obj
    if isinstance(obj, str):
        return interpolate_variables(obj, variables)
    if isinstance(obj, list):
        return [interpolate_object_variables(item, variables, depth + 1) for item in obj]
    if isinstance(obj, dict):
        return {key: interpolate_object_variables(value, variables, depth + 1) for key, value in obj.items()}
    return obj
