"""evaluator.py

Objective pass/fail judgement for one iteration.

``evaluate_tool_calls`` compares the expected tool names of a test case with the
tool names the agent actually invoked. It is pure: identical inputs always give
an identical EvaluationResult. Repeated calls of an expected tool are not
penalised; every call of an unexpected tool is reported.
"""

from __future__ import annotations

from typing import Iterable, Optional

from models import EvaluationResult


def evaluate_tool_calls(
    expected: Iterable[str],
    called: Iterable[str],
    error: Optional[str] = None,
) -> EvaluationResult:
    expected_list = list(dict.fromkeys(expected))
    called_list = list(called)

    expected_set = set(expected_list)
    called_set = set(called_list)

    missing = [t for t in expected_list if t not in called_set]
    unexpected = [t for t in called_list if t not in expected_set]

    if error:
        passed = False
    elif not expected_list:
        passed = not called_list
    else:
        passed = not missing and not unexpected

    return EvaluationResult(
        passed=passed,
        expected_tool_calls=expected_list,
        called_tools=called_list,
        missing_tools=missing,
        unexpected_tools=unexpected,
    )


def summarize_evaluation(evaluation: EvaluationResult, error: Optional[str] = None) -> list[str]:
    lines = [
        f"called: {', '.join(evaluation.called_tools) or '(none)'}",
        f"missing: {', '.join(evaluation.missing_tools) or '(none)'}",
        f"unexpected: {', '.join(evaluation.unexpected_tools) or '(none)'}",
    ]
    if error:
        lines.append(f"error: {error}")
    return lines


def failure_message(evaluation: EvaluationResult, error: Optional[str] = None) -> str:
    if error:
        return error
    return (
        f"Missing tools: {', '.join(evaluation.missing_tools) or '(none)'}; "
        f"Unexpected tools: {', '.join(evaluation.unexpected_tools) or '(none)'}"
    )
