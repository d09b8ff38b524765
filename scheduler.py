"""scheduler.py

Runs every test case of a suite under a bounded worker pool.

- At most ``concurrency`` test cases (clamped to 1..MAX_CONCURRENCY) are in flight.
- Workers share one cursor; a claim advances the cursor and the active count
  without suspending, so no index is ever claimed twice.
- A test case connects its MCP servers once, runs every repetition in order,
  and tears the connections down afterwards.
- Failures are isolated: a test case that cannot start records one failing
  result per repetition and the other workers carry on.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from agent import StepModel, build_step_model, run_iteration
from config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_FIRST_PARTY_MODELS,
    DEFAULT_MAX_STEPS,
    DEFAULT_TIMEOUT_MS,
    MAX_CONCURRENCY,
    logger,
)
from evaluator import evaluate_tool_calls
from mcp_setup import connect_tool_backend, resolve_connections
from models import EnvironmentFile, SuiteOutcome, TestCase, TestRunResult, TestsFile
from recorder import DisabledTracker, PersistenceContext


@dataclass
class RunOptions:
    concurrency: int = DEFAULT_CONCURRENCY
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_steps: int = DEFAULT_MAX_STEPS
    workspace_root: str = field(default_factory=os.getcwd)
    first_party_models: frozenset[str] = DEFAULT_FIRST_PARTY_MODELS
    backend_url: Optional[str] = None
    backend_token: Optional[str] = None


def clamp_concurrency(n: int) -> int:
    return max(1, min(MAX_CONCURRENCY, n))


# =========================
# Worker pool
# =========================


class WorkerPool:
    def __init__(self, size: int, count: int, job: Callable[[int], Awaitable[None]]):
        self.size = clamp_concurrency(size)
        self.count = count
        self.active = 0
        self.peak_active = 0
        self._cursor = 0
        self._job = job

    def _claim(self) -> Optional[int]:
        # Must not await: claim and dispatch are one atomic step on the event loop.
        if self._cursor >= self.count:
            return None
        index = self._cursor
        self._cursor += 1
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        return index

    async def _worker(self) -> None:
        while True:
            index = self._claim()
            if index is None:
                return
            try:
                await self._job(index)
            finally:
                self.active -= 1

    async def run(self) -> None:
        workers = min(self.size, self.count)
        await asyncio.gather(*(self._worker() for _ in range(workers)))


# =========================
# Test case / iteration
# =========================


async def _run_one_iteration(
    *,
    test: TestCase,
    run: int,
    step_model: StepModel,
    tools: Any,
    test_case_id: Optional[str],
    persistence: PersistenceContext,
    max_steps: int,
    timeout_ms: int,
) -> TestRunResult:
    iteration_id = await persistence.create_iteration(test_case_id, run, int(time.time() * 1000))

    start = time.perf_counter()
    outcome = await run_iteration(
        step_model=step_model,
        tools=tools,
        prompt=test.prompt,
        max_steps=max_steps,
        timeout_ms=timeout_ms,
    )
    duration_ms = max(0, round((time.perf_counter() - start) * 1000))

    evaluation = evaluate_tool_calls(test.expected_tools, outcome.called_tools, outcome.error)
    await persistence.update_iteration_result(
        iteration_id, evaluation.passed, outcome.called_tools, outcome.usage, outcome.messages
    )

    logger.info(
        "%s %s #%d (%dms, %d steps, %s)",
        "PASS" if evaluation.passed else "FAIL",
        test.title,
        run,
        duration_ms,
        len(outcome.steps),
        outcome.status.value,
    )
    return TestRunResult(
        title=test.title,
        passed=evaluation.passed,
        duration_ms=duration_ms,
        evaluation=evaluation,
        error=outcome.error,
        iteration=run,
    )


async def _run_test_case(
    test: TestCase,
    number: int,
    *,
    environment: EnvironmentFile,
    options: RunOptions,
    persistence: PersistenceContext,
    outcome: SuiteOutcome,
    connect: Callable[[dict], Any],
    model_factory: Callable[..., StepModel],
) -> None:
    recorded = 0
    max_steps = test.advanced.max_steps or options.max_steps
    timeout_ms = test.advanced.timeout_ms or options.timeout_ms
    try:
        test_case_id = await persistence.create_test_case(test, number)
        connections = resolve_connections(test, environment, options.workspace_root)
        async with connect(connections) as backend:
            step_model = model_factory(
                test,
                environment,
                backend,
                first_party_models=options.first_party_models,
                backend_url=options.backend_url,
                backend_token=options.backend_token,
            )
            try:
                # Every repetition runs, whatever the earlier ones returned.
                for run in range(1, test.runs + 1):
                    result = await _run_one_iteration(
                        test=test,
                        run=run,
                        step_model=step_model,
                        tools=backend,
                        test_case_id=test_case_id,
                        persistence=persistence,
                        max_steps=max_steps,
                        timeout_ms=timeout_ms,
                    )
                    outcome.record(result)
                    recorded += 1
            finally:
                await step_model.aclose()
    except Exception as e:
        message = str(e) or type(e).__name__
        if recorded == test.runs:
            logger.warning("Cleanup after test '%s' failed: %s", test.title, message)
            return
        logger.error("Test '%s' failed: %s", test.title, message)
        for run in range(recorded + 1, test.runs + 1):
            outcome.record(
                TestRunResult(
                    title=test.title,
                    passed=False,
                    duration_ms=0,
                    evaluation=evaluate_tool_calls(test.expected_tools, [], message),
                    error=message,
                    iteration=run,
                )
            )


async def run_all(
    tests: TestsFile,
    environment: EnvironmentFile,
    options: Optional[RunOptions] = None,
    *,
    persistence: Optional[PersistenceContext] = None,
    connect: Callable[[dict], Any] = connect_tool_backend,
    model_factory: Callable[..., StepModel] = build_step_model,
) -> SuiteOutcome:
    options = options or RunOptions()
    persistence = persistence or PersistenceContext(DisabledTracker(), None, {})
    outcome = SuiteOutcome()
    cases = list(tests.tests)
    if not cases:
        logger.info("Empty suite; nothing to run")
        return outcome

    async def job(index: int) -> None:
        await _run_test_case(
            cases[index],
            index + 1,
            environment=environment,
            options=options,
            persistence=persistence,
            outcome=outcome,
            connect=connect,
            model_factory=model_factory,
        )

    pool = WorkerPool(options.concurrency, len(cases), job)
    logger.info("Running %d tests with concurrency %d", len(cases), min(pool.size, len(cases)))
    await pool.run()
    logger.info("Suite finished: %d results, %d failures", outcome.total, outcome.failures)
    return outcome
