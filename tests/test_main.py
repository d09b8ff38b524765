import json
import xml.etree.ElementTree as ET

import pytest

import main
from evaluator import evaluate_tool_calls
from models import SuiteOutcome, TestRunResult


def _write_inputs(tmp_path, provider="openai", prompt="What's the weather?"):
    (tmp_path / "tests.json").write_text(
        json.dumps(
            {
                "tests": [
                    {
                        "title": "weather",
                        "prompt": prompt,
                        "model": {"id": "gpt-4o", "provider": provider},
                        "expectedTools": ["get_weather"],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    (tmp_path / "env.json").write_text(
        json.dumps({"mcpServers": {"weather": {"command": "python", "args": ["./weather.py"]}}}),
        encoding="utf-8",
    )


def _fake_run_all(passed: bool):
    async def fake(tests, environment, options, *, persistence=None):
        called = ["get_weather"] if passed else []
        evaluation = evaluate_tool_calls(["get_weather"], called)
        return SuiteOutcome(
            results=[
                TestRunResult(title=t.title, passed=evaluation.passed, duration_ms=10, evaluation=evaluation)
                for t in tests.tests
            ]
        )

    return fake


@pytest.fixture(autouse=True)
def _no_tracker(monkeypatch):
    monkeypatch.delenv("EVALS_API_KEY", raising=False)
    monkeypatch.delenv("EVALS_TRACKER_URL", raising=False)
    for name in ("INPUT_TESTS", "INPUT_ENVIRONMENT", "INPUT_OUTPUT_FORMAT"):
        monkeypatch.delenv(name, raising=False)


def test_missing_inputs_exit_2(monkeypatch, capsys):
    monkeypatch.setattr(main, "run_all", _fake_run_all(True))
    assert main.run_cli([]) == main.EXIT_CONFIG_ERROR
    assert "Missing required inputs" in capsys.readouterr().err


def test_missing_file_exits_2(tmp_path):
    assert main.run_cli(["nope.json", "env.json", "--workspace-root", str(tmp_path)]) == 2


def test_unsupported_provider_exits_2(tmp_path, capsys):
    _write_inputs(tmp_path, provider="ollama")
    assert main.run_cli(["tests.json", "env.json", "--workspace-root", str(tmp_path)]) == 2
    assert "ollama" in capsys.readouterr().err


def test_missing_env_variable_exits_2(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("WEATHER_PROMPT", raising=False)
    _write_inputs(tmp_path, prompt="${WEATHER_PROMPT}")
    assert main.run_cli(["tests.json", "env.json", "--workspace-root", str(tmp_path)]) == 2
    assert "WEATHER_PROMPT" in capsys.readouterr().err


def test_all_passing_exits_0_and_writes_junit(tmp_path, monkeypatch):
    _write_inputs(tmp_path)
    monkeypatch.setattr(main, "run_all", _fake_run_all(True))
    assert main.run_cli(["tests.json", "env.json", "--workspace-root", str(tmp_path)]) == main.EXIT_OK

    root = ET.parse(tmp_path / "mcp-results.xml").getroot()
    assert root.get("tests") == "1"
    assert root.get("failures") == "0"


def test_failures_exit_1_and_write_json(tmp_path, monkeypatch):
    _write_inputs(tmp_path)
    monkeypatch.setattr(main, "run_all", _fake_run_all(False))
    code = main.run_cli(
        [
            "tests.json",
            "env.json",
            "--workspace-root",
            str(tmp_path),
            "--format",
            "JSON",
            "--out",
            "reports/out.json",
            "--markdown",
            "reports/summary.md",
        ]
    )
    assert code == main.EXIT_FAILURES

    doc = json.loads((tmp_path / "reports" / "out.json").read_text(encoding="utf-8"))
    assert doc["passed"] is False
    assert doc["results"][0]["evaluation"]["missing_tools"] == ["get_weather"]
    assert "Suite result: FAILED" in (tmp_path / "reports" / "summary.md").read_text(encoding="utf-8")


def test_cli_options_reach_the_scheduler(tmp_path, monkeypatch):
    _write_inputs(tmp_path)
    seen = {}
    fake = _fake_run_all(True)

    async def capture(tests, environment, options, *, persistence=None):
        seen["options"] = options
        seen["persistence_enabled"] = persistence.enabled
        return await fake(tests, environment, options)

    monkeypatch.setattr(main, "run_all", capture)
    monkeypatch.setenv("EVALS_BACKEND_URL", "https://evals.example.com")
    monkeypatch.setenv("EVALS_FIRST_PARTY_MODELS", "a/model, b/model")
    main.run_cli(
        ["tests.json", "env.json", "--workspace-root", str(tmp_path), "--concurrency", "6", "--max-steps", "3"]
    )

    options = seen["options"]
    assert options.concurrency == 6
    assert options.max_steps == 3
    assert options.workspace_root == str(tmp_path.resolve())
    assert options.backend_url == "https://evals.example.com"
    assert options.first_party_models == frozenset({"a/model", "b/model"})
    assert seen["persistence_enabled"] is False


def test_first_party_models_default(monkeypatch):
    monkeypatch.delenv("EVALS_FIRST_PARTY_MODELS", raising=False)
    assert "openai/gpt-oss-120b" in main.first_party_models_from_env()
