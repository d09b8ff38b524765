"""main.py

Orchestration entrypoint for the MCP evaluation engine.

Wires together all subsystems:
  loader → mcp_setup → agent → evaluator → scheduler → recorder / reporting

Exit codes: 0 all tests passed, 1 at least one failure, 2 configuration error
before any test ran.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_FIRST_PARTY_MODELS,
    DEFAULT_MAX_STEPS,
    DEFAULT_TIMEOUT_MS,
    ENV_BACKEND_TOKEN,
    ENV_BACKEND_URL,
    ENV_FIRST_PARTY_MODELS,
    ENV_TRACKER_API_KEY,
    ENV_TRACKER_URL,
    logger,
)
from errors import ConfigValidationError, UnsupportedProviderError
from loader import load_files
from models import EnvironmentFile, SuiteOutcome, TestsFile
from recorder import create_persistence_context, suite_config_summary
from reporting import generate_junit_xml, outcome_to_json, render_markdown_summary
from scheduler import RunOptions, run_all

load_dotenv(find_dotenv(usecwd=True))

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG_ERROR = 2

OUTPUT_FORMATS = ("junit-xml", "json")


def first_party_models_from_env() -> frozenset[str]:
    raw = os.getenv(ENV_FIRST_PARTY_MODELS)
    if not raw:
        return DEFAULT_FIRST_PARTY_MODELS
    return frozenset(m.strip() for m in raw.split(",") if m.strip())


async def run_evaluation(
    tests: TestsFile,
    environment: EnvironmentFile,
    options: RunOptions,
) -> SuiteOutcome:
    persistence = create_persistence_context(
        os.getenv(ENV_TRACKER_API_KEY),
        suite_config_summary(tests, environment),
        os.getenv(ENV_TRACKER_URL),
    )
    try:
        return await run_all(tests, environment, options, persistence=persistence)
    finally:
        await persistence.aclose()


def write_reports(
    outcome: SuiteOutcome,
    output_format: str,
    out_path: Path,
    markdown_path: Optional[Path] = None,
) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if output_format == "json":
        out_path.write_text(outcome_to_json(outcome), encoding="utf-8")
    else:
        out_path.write_text(generate_junit_xml(outcome), encoding="utf-8")
    logger.info("Wrote %s report to %s", output_format, out_path)

    if markdown_path is not None:
        markdown_path.parent.mkdir(parents=True, exist_ok=True)
        markdown_path.write_text(render_markdown_summary(outcome), encoding="utf-8")
        logger.info("Wrote markdown report to %s", markdown_path)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Run MCP agent evaluation suites")
    p.add_argument("tests", nargs="?", default=os.getenv("INPUT_TESTS"), help="Path to the tests JSON file")
    p.add_argument(
        "environment", nargs="?", default=os.getenv("INPUT_ENVIRONMENT"), help="Path to the environment JSON file"
    )
    p.add_argument(
        "--format",
        dest="output_format",
        type=str.lower,
        choices=OUTPUT_FORMATS,
        default=(os.getenv("INPUT_OUTPUT_FORMAT") or "junit-xml").lower(),
        help="Report format",
    )
    p.add_argument("--out", type=str, default=None, help="Report path (default mcp-results.xml/.json)")
    p.add_argument("--markdown", type=str, default=None, help="Also write a Markdown summary to this path")
    p.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Test cases run in parallel (1-8)")
    p.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS, help="Default per-iteration timeout")
    p.add_argument("--max-steps", type=int, default=DEFAULT_MAX_STEPS, help="Default step budget per iteration")
    p.add_argument("--workspace-root", type=str, default=os.getcwd(), help="Base for relative paths")
    return p


def run_cli(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if not args.tests or not args.environment:
        print("Missing required inputs: tests and environment", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    root = Path(args.workspace_root).resolve()
    try:
        tests, environment = load_files(root / args.tests, root / args.environment)
    except (ConfigValidationError, UnsupportedProviderError, OSError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    options = RunOptions(
        concurrency=args.concurrency,
        timeout_ms=args.timeout_ms,
        max_steps=args.max_steps,
        workspace_root=str(root),
        first_party_models=first_party_models_from_env(),
        backend_url=os.getenv(ENV_BACKEND_URL),
        backend_token=os.getenv(ENV_BACKEND_TOKEN),
    )
    outcome = asyncio.run(run_evaluation(tests, environment, options))

    default_name = "mcp-results.json" if args.output_format == "json" else "mcp-results.xml"
    out_path = root / (args.out or default_name)
    write_reports(outcome, args.output_format, out_path, root / args.markdown if args.markdown else None)

    logger.info("%d/%d passed", outcome.total - outcome.failures, outcome.total)
    return EXIT_OK if outcome.passed else EXIT_FAILURES


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
