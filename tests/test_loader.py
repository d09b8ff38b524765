import json

import pytest

from errors import ConfigValidationError, UnsupportedProviderError
from loader import load_and_validate, load_files
from models import HttpServer, StdioServer
from utils import substitute_env_variables


def _tests_doc(**overrides):
    test = {
        "title": "finds weather",
        "prompt": "What's the weather in Paris?",
        "model": {"id": "gpt-4o", "provider": "openai"},
        "expectedTools": ["get_weather"],
    }
    test.update(overrides)
    return {"tests": [test]}


def _env_doc(**servers):
    return {
        "mcpServers": servers or {"weather": {"command": "python", "args": ["./weather.py"]}},
        "providerApiKeys": {"openai": "sk-test"},
    }


# =========================
# ${VAR} substitution
# =========================


def test_substitution_reports_missing_name():
    value, missing = substitute_env_variables({"k": "${FOO}"}, env={})
    assert missing == ["FOO"]
    assert value == {"k": ""}


def test_substitution_replaces_defined_name():
    value, missing = substitute_env_variables({"k": ["x-${FOO}-y"]}, env={"FOO": "bar"})
    assert missing == []
    assert value == {"k": ["x-bar-y"]}


def test_escaped_placeholder_is_kept_literally():
    value, missing = substitute_env_variables("\\${FOO} and ${BAR}", env={"BAR": "b"})
    assert missing == []
    assert value == "${FOO} and b"


def test_lowercase_placeholders_are_not_substituted():
    value, missing = substitute_env_variables("${foo}", env={})
    assert value == "${foo}"
    assert missing == []


def test_missing_variables_across_both_documents_are_all_reported():
    env = _env_doc(api={"url": "https://x.example/mcp", "headers": {"Authorization": "Bearer ${TOKEN}"}})
    env["providerApiKeys"] = {"openai": "${OPENAI_KEY}"}
    with pytest.raises(ConfigValidationError) as ei:
        load_and_validate(_tests_doc(prompt="${PROMPT_TEXT}"), env, env={})
    assert ei.value.errors == ["PROMPT_TEXT", "TOKEN", "OPENAI_KEY"]
    assert "Missing environment variables" in str(ei.value)


# =========================
# Validation
# =========================


def test_schema_errors_list_every_offender():
    tests = {
        "tests": [
            {"title": "no prompt", "model": {"id": "gpt-4o", "provider": "openai"}},
            {"title": "bad runs", "prompt": "p", "model": {"id": "gpt-4o", "provider": "openai"}, "runs": 0},
        ]
    }
    env = {"mcpServers": {"broken": {"args": []}}}
    with pytest.raises(ConfigValidationError) as ei:
        load_and_validate(tests, env, env={})
    errors = ei.value.errors
    assert any(e.startswith("tests: tests/0") and "prompt" in e for e in errors)
    assert any(e.startswith("tests: tests/1/runs") for e in errors)
    assert any(e.startswith("environment: mcpServers/broken") for e in errors)


def test_unsupported_provider_is_rejected():
    with pytest.raises(UnsupportedProviderError) as ei:
        load_and_validate(_tests_doc(model={"id": "llama3", "provider": "ollama"}), _env_doc(), env={})
    assert ei.value.offenders == [("finds weather", "ollama")]
    assert "'finds weather' (ollama)" in str(ei.value)


def test_empty_tests_array_is_allowed():
    tests, environment = load_and_validate({"tests": []}, _env_doc(), env={})
    assert tests.tests == ()
    assert "weather" in environment.servers


# =========================
# Conversion
# =========================


def test_documents_convert_to_models():
    tests_doc = _tests_doc(
        expectedTools=["get_weather", "get_weather", "geocode"],
        runs=3,
        selectedServers=["weather"],
        model={"id": "claude-sonnet", "provider": "Anthropic"},
        advancedConfig={"instructions": "Be brief", "temperature": 0.2, "timeout": 5000, "maxSteps": 4},
    )
    env_doc = {
        "mcpServers": {
            "weather": {"command": "python", "args": ["./weather.py"], "env": {"UNITS": "metric"}},
            "search": {"url": "https://search.example/mcp", "headers": {"X-Key": "${SEARCH_KEY}"}},
        },
        "providerApiKeys": {"Anthropic": "${ANTHROPIC_KEY}", "openai": ""},
    }
    tests, environment = load_and_validate(tests_doc, env_doc, env={"SEARCH_KEY": "s", "ANTHROPIC_KEY": "a"})

    test = tests.tests[0]
    assert test.expected_tools == ("get_weather", "geocode")
    assert test.runs == 3
    assert test.selected_servers == ("weather",)
    assert test.model.provider == "anthropic"
    assert test.advanced.system == "Be brief"
    assert test.advanced.timeout_ms == 5000
    assert test.advanced.max_steps == 4

    assert environment.servers["weather"] == StdioServer(
        command="python", args=("./weather.py",), env={"UNITS": "metric"}
    )
    assert environment.servers["search"] == HttpServer(url="https://search.example/mcp", headers={"X-Key": "s"})
    assert environment.provider_api_keys == {"anthropic": "a"}


def test_runs_default_to_one():
    tests, _ = load_and_validate(_tests_doc(), _env_doc(), env={})
    assert tests.tests[0].runs == 1
    assert tests.tests[0].selected_servers == ()


def test_load_files_reports_invalid_json(tmp_path):
    tests_path = tmp_path / "tests.json"
    env_path = tmp_path / "env.json"
    tests_path.write_text("{not json", encoding="utf-8")
    env_path.write_text(json.dumps(_env_doc()), encoding="utf-8")
    with pytest.raises(ConfigValidationError, match="Invalid JSON in tests file"):
        load_files(tests_path, env_path)


def test_load_files_reads_both_documents(tmp_path, monkeypatch):
    monkeypatch.delenv("FOO", raising=False)
    tests_path = tmp_path / "tests.json"
    env_path = tmp_path / "env.json"
    tests_path.write_text(json.dumps(_tests_doc()), encoding="utf-8")
    env_path.write_text(json.dumps(_env_doc()), encoding="utf-8")
    tests, environment = load_files(tests_path, env_path)
    assert tests.tests[0].title == "finds weather"
    assert environment.provider_api_keys == {"openai": "sk-test"}
