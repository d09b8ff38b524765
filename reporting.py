"""reporting.py

Report emission for the MCP evaluation engine.

Provides four public functions:

- ``generate_junit_xml``          - JUnit XML for CI systems (one testcase per iteration).
- ``outcome_to_json``             - the full SuiteOutcome as JSON.
- ``compute_test_level_summary``  - aggregates per-test statistics across repetitions.
- ``render_markdown_summary``     - a human-readable Markdown report.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from collections import Counter
from datetime import datetime
from typing import Any

from config import DEFAULT_SUITE_NAME
from evaluator import failure_message, summarize_evaluation
from models import SuiteOutcome, TestRunResult
from utils import _mean, _safe_json_dumps, _stdev


# =========================
# Internal helpers
# =========================

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_XML_ILLEGAL = re.compile("[^\x09\x0A\x0D\x20-\uD7FF\uE000-\uFFFD\U00010000-\U0010FFFF]")


def _xml_safe(text: str) -> str:
    """Drop ANSI colour codes and replace characters XML 1.0 cannot carry."""
    return _XML_ILLEGAL.sub("\uFFFD", _ANSI_ESCAPE.sub("", text))


def _case_names(results: list[TestRunResult]) -> list[str]:
    """Testcase names; repeated titles get ``[run i/N]`` appended."""
    counts = Counter(r.title for r in results)
    return [
        r.title if counts[r.title] == 1 else f"{r.title} [run {r.iteration}/{counts[r.title]}]"
        for r in results
    ]


def _seconds(ms: float) -> str:
    return f"{ms / 1000:.3f}"


# =========================
# Public API
# =========================


def generate_junit_xml(outcome: SuiteOutcome, suite_name: str = DEFAULT_SUITE_NAME) -> str:
    suite = ET.Element(
        "testsuite",
        {
            "name": _xml_safe(suite_name),
            "tests": str(outcome.total),
            "failures": str(outcome.failures),
            "time": _seconds(sum(r.duration_ms for r in outcome.results)),
        },
    )
    for name, r in zip(_case_names(outcome.results), outcome.results):
        case = ET.SubElement(suite, "testcase", {"name": _xml_safe(name), "time": _seconds(r.duration_ms)})
        ET.SubElement(case, "system-out").text = _xml_safe("\n".join(summarize_evaluation(r.evaluation, r.error)))
        if not r.passed:
            ET.SubElement(case, "failure", {"message": _xml_safe(failure_message(r.evaluation, r.error))})

    ET.indent(suite)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(suite, encoding="unicode") + "\n"


def outcome_to_json(outcome: SuiteOutcome) -> str:
    return _safe_json_dumps(outcome.to_dict(), indent=2)


def compute_test_level_summary(outcome: SuiteOutcome) -> list[dict[str, Any]]:
    by_title: dict[str, list[TestRunResult]] = {}
    for r in outcome.results:
        by_title.setdefault(r.title, []).append(r)

    summary: list[dict[str, Any]] = []
    for title, rs in by_title.items():
        durations = [r.duration_ms / 1000 for r in rs]
        summary.append(
            {
                "title": title,
                "n": len(rs),
                "pass_rate": _mean([1 if r.passed else 0 for r in rs]),
                "duration_mean_s": _mean(durations),
                "duration_stdev_s": _stdev(durations),
                "error_count": sum(1 for r in rs if r.error),
                "missing_tools": sorted({t for r in rs for t in r.evaluation.missing_tools}),
                "unexpected_tools": sorted({t for r in rs for t in r.evaluation.unexpected_tools}),
            }
        )
    return summary


def render_markdown_summary(outcome: SuiteOutcome, suite_name: str = DEFAULT_SUITE_NAME) -> str:
    total = outcome.total
    passed = total - outcome.failures

    out = []
    out.append(f"# {suite_name} Report\n")
    out.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
    out.append("\n## Executive Summary\n")
    out.append(f"- Total iterations: {total}\n")
    out.append(f"- Passed: {passed}/{total} ({(passed / total * 100 if total else 0):.1f}%)\n")
    out.append(f"- Suite result: {'PASSED' if outcome.passed else 'FAILED'}\n")

    out.append("\n## Test-Level Summary\n")
    out.append("| Test | Runs | Pass Rate | Mean Duration (s) | StdDev | Errors | Missing | Unexpected |\n")
    out.append("|---|---:|---:|---:|---:|---:|---|---|\n")
    for s in compute_test_level_summary(outcome):
        out.append(
            f"| {s['title']} | {s['n']} | {s['pass_rate'] * 100:.0f}% | {s['duration_mean_s']:.2f} | "
            f"{s['duration_stdev_s']:.2f} | {s['error_count']} | {', '.join(s['missing_tools']) or '-'} | "
            f"{', '.join(s['unexpected_tools']) or '-'} |\n"
        )
    return "".join(out)
