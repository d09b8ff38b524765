"""loader.py

Loads the tests and environment JSON documents into immutable TestsFile /
EnvironmentFile objects.

Order of work:
1. ${VAR} substitution over both raw documents (all missing names reported at once).
2. JSON Schema validation of both documents (every offender reported at once).
3. Provider check: tests referencing unsupported providers are rejected.
4. Conversion into dataclasses.

Nothing here touches the network or spawns processes; all errors are fatal
before any test runs.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from jsonschema import Draft202012Validator

from config import SUPPORTED_PROVIDERS, logger
from errors import ConfigValidationError, UnsupportedProviderError
from models import (
    AdvancedConfig,
    EnvironmentFile,
    HttpServer,
    ModelDefinition,
    StdioServer,
    TestCase,
    TestsFile,
)
from utils import substitute_env_variables


# =========================
# Schemas
# =========================

_STRING_LIST = {"type": "array", "items": {"type": "string", "minLength": 1}}
_STRING_MAP = {"type": "object", "additionalProperties": {"type": "string"}}

TESTS_FILE_SCHEMA: dict = {
    "type": "object",
    "required": ["tests"],
    "properties": {
        "tests": {"type": "array", "items": {"$ref": "#/$defs/test"}},
    },
    "$defs": {
        "test": {
            "type": "object",
            "required": ["title", "prompt", "model"],
            "properties": {
                "title": {"type": "string", "minLength": 1},
                "prompt": {"type": "string", "minLength": 1},
                "expectedTools": _STRING_LIST,
                "runs": {"type": "integer", "minimum": 1},
                "selectedServers": _STRING_LIST,
                "model": {
                    "type": "object",
                    "required": ["id", "provider"],
                    "properties": {
                        "id": {"type": "string", "minLength": 1},
                        "provider": {"type": "string", "minLength": 1},
                    },
                },
                "advancedConfig": {
                    "type": "object",
                    "properties": {
                        "system": {"type": "string"},
                        "instructions": {"type": "string"},
                        "temperature": {"type": "number"},
                        "toolChoice": {"type": "string", "minLength": 1},
                        "timeout": {"type": "integer", "minimum": 1},
                        "maxSteps": {"type": "integer", "minimum": 1},
                    },
                },
            },
        },
    },
}

ENVIRONMENT_FILE_SCHEMA: dict = {
    "type": "object",
    "required": ["mcpServers"],
    "properties": {
        "mcpServers": {
            "type": "object",
            "additionalProperties": {
                "anyOf": [{"$ref": "#/$defs/stdio"}, {"$ref": "#/$defs/http"}],
            },
        },
        "providerApiKeys": _STRING_MAP,
    },
    "$defs": {
        "stdio": {
            "type": "object",
            "required": ["command"],
            "properties": {
                "command": {"type": "string", "minLength": 1},
                "args": {"type": "array", "items": {"type": "string"}},
                "env": _STRING_MAP,
            },
        },
        "http": {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "minLength": 1},
                "headers": {"type": "object", "additionalProperties": {"type": "string", "minLength": 1}},
            },
        },
    },
}


def _schema_errors(label: str, doc: Any, schema: dict) -> list[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(doc), key=lambda e: [str(p) for p in e.absolute_path])
    out: list[str] = []
    for e in errors:
        path = "/".join(str(p) for p in e.absolute_path) or "<root>"
        out.append(f"{label}: {path}: {e.message}")
    return out


# =========================
# Conversion
# =========================


def _dedupe(names: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(n.strip() for n in names))


def _parse_test(raw: dict) -> TestCase:
    adv = raw.get("advancedConfig") or {}
    model = raw["model"]
    return TestCase(
        title=raw["title"],
        prompt=raw["prompt"],
        model=ModelDefinition(id=model["id"], provider=model["provider"].strip().lower()),
        advanced=AdvancedConfig(
            system=adv.get("system", adv.get("instructions")),
            temperature=adv.get("temperature"),
            tool_choice=adv.get("toolChoice"),
            timeout_ms=int(adv["timeout"]) if adv.get("timeout") is not None else None,
            max_steps=int(adv["maxSteps"]) if adv.get("maxSteps") is not None else None,
        ),
        expected_tools=_dedupe(raw.get("expectedTools") or []),
        runs=int(raw.get("runs", 1)),
        selected_servers=tuple(raw.get("selectedServers") or ()),
    )


def _parse_environment(raw: dict) -> EnvironmentFile:
    servers = {}
    for name, d in raw["mcpServers"].items():
        if "command" in d:
            servers[name] = StdioServer(
                command=d["command"],
                args=tuple(d.get("args") or ()),
                env=dict(d["env"]) if d.get("env") else None,
            )
        else:
            servers[name] = HttpServer(
                url=d["url"],
                headers=dict(d["headers"]) if d.get("headers") else None,
            )
    # Blank keys (e.g. an env var set to "") count as not configured.
    keys = {p.lower(): k for p, k in (raw.get("providerApiKeys") or {}).items() if k}
    return EnvironmentFile(servers=servers, provider_api_keys=keys)


# =========================
# Public API
# =========================


def load_and_validate(
    tests_json: Any,
    env_json: Any,
    env: Optional[Mapping[str, str]] = None,
) -> tuple[TestsFile, EnvironmentFile]:
    env = os.environ if env is None else env

    tests_sub, tests_missing = substitute_env_variables(tests_json, env)
    env_sub, env_missing = substitute_env_variables(env_json, env)
    missing = list(dict.fromkeys(tests_missing + env_missing))
    if missing:
        raise ConfigValidationError(f"Missing environment variables: {', '.join(missing)}", missing)

    errors = _schema_errors("tests", tests_sub, TESTS_FILE_SCHEMA)
    errors += _schema_errors("environment", env_sub, ENVIRONMENT_FILE_SCHEMA)
    if errors:
        raise ConfigValidationError("Invalid configuration", errors)

    unsupported = [
        (t["title"], t["model"]["provider"])
        for t in tests_sub["tests"]
        if t["model"]["provider"].strip().lower() not in SUPPORTED_PROVIDERS
    ]
    if unsupported:
        raise UnsupportedProviderError(unsupported)

    tests = TestsFile(tests=tuple(_parse_test(t) for t in tests_sub["tests"]))
    environment = _parse_environment(env_sub)
    if not tests.tests:
        logger.warning("Tests file contains no tests")
    logger.info("Loaded %d tests and %d MCP servers", len(tests.tests), len(environment.servers))
    return tests, environment


def _read_json(path: Path, label: str) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in {label} file {path}: {e}") from e


def load_files(tests_path: Path, env_path: Path) -> tuple[TestsFile, EnvironmentFile]:
    return load_and_validate(_read_json(tests_path, "tests"), _read_json(env_path, "environment"))
