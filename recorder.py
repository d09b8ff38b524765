"""recorder.py

Optional remote persistence of suite runs.

A ResultTracker exposes four typed operations. Two implementations exist:

- DisabledTracker  - every operation is a no-op (no api key configured).
- ConvexTracker    - calls the tracker deployment's HTTP action API.

Tracker calls are best effort: each one catches its own failure, logs it, and
returns None. Nothing here can fail a test or change the exit code.

PersistenceContext is created once per suite. It owns the api key and the
lazily created suite id, and guards suite creation so it happens at most once
even when several workers reach it concurrently.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from config import TRACKER_REQUEST_TIMEOUT_S, logger
from errors import PersistenceError
from models import EnvironmentFile, TestCase, TestsFile, UsageTotals


# =========================
# Tracker interface
# =========================


class ResultTracker(ABC):
    enabled: bool = True

    @abstractmethod
    async def create_suite(self, api_key: str, config: dict[str, Any]) -> Optional[str]: ...

    @abstractmethod
    async def create_test_case(self, api_key: str, suite_id: str, meta: dict[str, Any]) -> Optional[str]: ...

    @abstractmethod
    async def create_iteration(
        self, api_key: str, test_case_id: str, iteration_number: int, started_at: int
    ) -> Optional[str]: ...

    @abstractmethod
    async def update_iteration_result(
        self,
        api_key: str,
        iteration_id: str,
        passed: bool,
        tool_calls: list[str],
        usage: Optional[UsageTotals],
        transcript: list[dict],
    ) -> None: ...

    async def aclose(self) -> None:
        return None


class DisabledTracker(ResultTracker):
    enabled = False

    async def create_suite(self, api_key, config):
        return None

    async def create_test_case(self, api_key, suite_id, meta):
        return None

    async def create_iteration(self, api_key, test_case_id, iteration_number, started_at):
        return None

    async def update_iteration_result(self, api_key, iteration_id, passed, tool_calls, usage, transcript):
        return None


class ConvexTracker(ResultTracker):
    """Tracker backed by a deployment's ``/api/action`` HTTP endpoint."""

    def __init__(self, url: str, http_client: Optional[httpx.AsyncClient] = None):
        self._endpoint = url.rstrip("/") + "/api/action"
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=TRACKER_REQUEST_TIMEOUT_S)

    async def _action(self, path: str, args: dict[str, Any]) -> Any:
        try:
            resp = await self._http.post(self._endpoint, json={"path": path, "args": args, "format": "json"})
            resp.raise_for_status()
            body = resp.json()
            if not isinstance(body, dict) or body.get("status") != "success":
                message = body.get("errorMessage") if isinstance(body, dict) else None
                raise PersistenceError(message or f"{path} failed")
            return body.get("value")
        # No tracker failure may reach a test run.
        except Exception as e:
            logger.warning("Persistence call %s failed: %s", path, e)
            return None

    async def create_suite(self, api_key, config):
        return await self._action(
            "evals:createEvalTestSuiteWithApiKey",
            {"apiKey": api_key, "config": config},
        )

    async def create_test_case(self, api_key, suite_id, meta):
        return await self._action(
            "evals:createEvalTestCaseWithApiKey",
            {"apiKey": api_key, "evalTestSuiteId": suite_id, **meta},
        )

    async def create_iteration(self, api_key, test_case_id, iteration_number, started_at):
        return await self._action(
            "evals:createEvalTestIterationWithApiKey",
            {
                "apiKey": api_key,
                "testCaseId": test_case_id,
                "startedAt": started_at,
                "iterationNumber": iteration_number,
                "actualToolCalls": [],
                "tokensUsed": 0,
            },
        )

    async def update_iteration_result(self, api_key, iteration_id, passed, tool_calls, usage, transcript):
        await self._action(
            "evals:updateEvalTestIterationResultWithApiKey",
            {
                "apiKey": api_key,
                "testId": iteration_id,
                "status": "completed",
                "result": "passed" if passed else "failed",
                "actualToolCalls": tool_calls,
                "tokensUsed": usage.total_tokens if usage else 0,
                "blobContent": {"messages": transcript},
            },
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


# =========================
# Persistence context
# =========================


class PersistenceContext:
    def __init__(
        self,
        tracker: ResultTracker,
        api_key: Optional[str],
        config_summary: dict[str, Any],
    ):
        self.tracker = tracker
        self.api_key = api_key
        self.enabled = bool(api_key) and tracker.enabled
        self.config_summary = config_summary
        self.suite_id: Optional[str] = None
        self._suite_attempted = False
        self._lock = asyncio.Lock()

    async def ensure_suite(self) -> Optional[str]:
        if not self.enabled:
            return None
        async with self._lock:
            if not self._suite_attempted:
                self._suite_attempted = True
                self.suite_id = await self.tracker.create_suite(self.api_key, self.config_summary)
                if self.suite_id:
                    logger.info("Recording results under suite %s", self.suite_id)
        return self.suite_id

    async def create_test_case(self, test: TestCase, test_number: int) -> Optional[str]:
        suite_id = await self.ensure_suite()
        if not suite_id:
            return None
        meta = {
            "title": test.title or f"Group {test_number}",
            "query": test.prompt,
            "provider": test.model.provider,
            "model": test.model.id,
        }
        return await self.tracker.create_test_case(self.api_key, suite_id, meta)

    async def create_iteration(
        self, test_case_id: Optional[str], iteration_number: int, started_at: int
    ) -> Optional[str]:
        if not self.enabled or not test_case_id:
            return None
        return await self.tracker.create_iteration(self.api_key, test_case_id, iteration_number, started_at)

    async def update_iteration_result(
        self,
        iteration_id: Optional[str],
        passed: bool,
        tool_calls: list[str],
        usage: Optional[UsageTotals],
        transcript: list[dict],
    ) -> None:
        if not self.enabled or not iteration_id:
            return
        await self.tracker.update_iteration_result(
            self.api_key, iteration_id, passed, tool_calls, usage, transcript
        )

    async def aclose(self) -> None:
        await self.tracker.aclose()


def suite_config_summary(tests: TestsFile, environment: EnvironmentFile) -> dict[str, Any]:
    return {
        "tests": [t.to_dict() for t in tests.tests],
        "environment": {"servers": sorted(environment.servers)},
    }


def create_persistence_context(
    api_key: Optional[str],
    config_summary: dict[str, Any],
    tracker_url: Optional[str] = None,
) -> PersistenceContext:
    if api_key and tracker_url:
        tracker: ResultTracker = ConvexTracker(tracker_url)
    else:
        if api_key:
            logger.warning("Tracker api key set but no tracker URL configured; persistence disabled")
        tracker = DisabledTracker()
    return PersistenceContext(tracker, api_key, config_summary)
