"""utils.py

Shared utility functions for the MCP evaluation engine:
- ${VAR} placeholder substitution
- JSON serialisation helper
- Basic statistics helpers (mean, stdev)
"""

from __future__ import annotations

import json
import os
import re
import statistics
from typing import Any, Mapping, Optional


# =========================
# Environment substitution
# =========================

_ENV_PATTERN = re.compile(r"(?<!\\)\$\{([A-Z0-9_]+)\}")
_ESCAPED_PATTERN = re.compile(r"\\\$\{([A-Z0-9_]+)\}")


def substitute_env_variables(
    value: Any,
    env: Optional[Mapping[str, str]] = None,
) -> tuple[Any, list[str]]:
    """Replace every ``${NAME}`` in nested strings with ``env[NAME]``.

    ``\\${NAME}`` is an escape and yields the literal ``${NAME}``. Returns the
    substituted copy and the names that were not defined, in first-seen order.
    The caller decides what to do with a partial result; ``loader`` refuses it.
    """
    env = os.environ if env is None else env
    missing: list[str] = []

    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key not in env:
            if key not in missing:
                missing.append(key)
            return ""
        return env[key]

    def _walk(v: Any) -> Any:
        if isinstance(v, str):
            replaced = _ENV_PATTERN.sub(_sub, v)
            return _ESCAPED_PATTERN.sub(lambda m: "${" + m.group(1) + "}", replaced)
        if isinstance(v, list):
            return [_walk(x) for x in v]
        if isinstance(v, dict):
            return {k: _walk(x) for k, x in v.items()}
        return v

    return _walk(value), missing


# =========================
# String / JSON helpers
# =========================


def _safe_json_dumps(obj: Any, **kwargs: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str, **kwargs)


# =========================
# Statistics helpers
# =========================


def _mean(xs: list[float]) -> float:
    return statistics.mean(xs) if xs else 0.0


def _stdev(xs: list[float]) -> float:
    return statistics.stdev(xs) if len(xs) > 1 else 0.0
