"""
Configuration resolution and environment variable substitution.
"""

import os
import re
from typing import Any

_ENV_VAR = re.compile(r"\${([^}:]+)(?::-([^}]*))?}")


def resolve_config(config_data: dict[str, Any], env: str = "dev") -> dict[str, Any]:
    """
    Resolve configuration placeholders.

    Substitutes ``${VAR}`` (left as-is when unset), ``${VAR:-default}``, the
    ``{env}`` placeholder, and ``{stack}`` with the resolved top-level
    ``stack`` value so bucket and table names can be derived from it.

    Args:
        config_data: Configuration dictionary
        env: Current environment name

    Returns:
        Resolved configuration
    """
    resolved = _resolve_value(config_data, env, None)
    stack = resolved.get("stack")
    if isinstance(stack, str) and stack:
        resolved = _resolve_value(resolved, env, stack)
    return resolved


def _substitute(match: re.Match) -> str:
    value = os.getenv(match.group(1))
    if value is not None:
        return value
    if match.group(2) is not None:
        return match.group(2)
    return match.group(0)


def _resolve_value(value: Any, env: str, stack: str | None) -> Any:
    """Recursively resolve values in configuration."""
    if isinstance(value, dict):
        return {k: _resolve_value(v, env, stack) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_value(item, env, stack) for item in value]
    elif isinstance(value, str):
        result = _ENV_VAR.sub(_substitute, value)
        result = result.replace("{env}", env)
        if stack is not None:
            result = result.replace("{stack}", stack)
        return result
    else:
        return value
