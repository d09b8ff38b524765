"""Shared fakes for the evaluation engine tests.

Nothing here talks to a model provider or spawns an MCP server: the step model
is scripted, and the tool backend answers from a dict.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Callable, Optional, Union

import pytest

from agent import CHAT_COMPLETIONS, StepResponse
from models import (
    AdvancedConfig,
    EnvironmentFile,
    ModelDefinition,
    StdioServer,
    TestCase,
    TestsFile,
)


def assistant(text: Optional[str] = None, calls: tuple = ()) -> dict:
    """Assistant turn; ``calls`` is a sequence of (id, name, arguments-json)."""
    turn: dict[str, Any] = {"role": "assistant", "content": text}
    if calls:
        turn["tool_calls"] = [
            {"id": cid, "type": "function", "function": {"name": name, "arguments": args}}
            for cid, name, args in calls
        ]
    return turn


def reply(*turns: dict, input_tokens=None, output_tokens=None, total_tokens=None) -> StepResponse:
    return StepResponse(
        turns=list(turns),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
    )


Script = Union[StepResponse, Exception, Callable[[list], Any]]


class ScriptedStepModel:
    """Returns scripted responses in order, then plain text forever.

    A script entry may be a StepResponse, an exception to raise, or a callable
    (sync or async) receiving the history and returning a StepResponse.
    """

    history = CHAT_COMPLETIONS

    def __init__(self, script: Optional[list[Script]] = None, reports_usage: bool = True, delay: float = 0.0):
        self.script = list(script or [])
        self.reports_usage = reports_usage
        self.delay = delay
        self.calls: list[list[dict]] = []
        self.closed = False

    def opening_messages(self, prompt: str) -> list[dict]:
        return [{"role": "user", "content": prompt}]

    async def step(self, messages: list[dict]) -> StepResponse:
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.script:
            return reply(assistant("done"))
        entry = self.script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            result = entry(messages)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return entry

    async def aclose(self) -> None:
        self.closed = True


class FakeTools:
    def __init__(self, results: Optional[dict[str, Any]] = None, failing: Optional[dict[str, Exception]] = None):
        self.results = results or {}
        self.failing = failing or {}
        self.calls: list[tuple[str, dict]] = []

    async def call_tool(self, name: str, arguments: dict) -> Any:
        self.calls.append((name, arguments))
        if name in self.failing:
            raise self.failing[name]
        return self.results.get(name, {"ok": True})

    def tool_definitions(self) -> list[dict]:
        return [{"name": n, "description": None, "inputSchema": {"type": "object"}} for n in self.results]

    def openai_tools(self) -> list[dict]:
        return []


class FakeConnect:
    """Stand-in for ``connect_tool_backend``: counts opens and closes."""

    def __init__(self, tools: Optional[FakeTools] = None):
        self.tools = tools or FakeTools()
        self.opened = 0
        self.closed = 0
        self.connections: list[dict] = []

    def __call__(self, connections: dict) -> "FakeConnect._Ctx":
        self.connections.append(connections)
        return FakeConnect._Ctx(self)

    class _Ctx:
        def __init__(self, owner: "FakeConnect"):
            self.owner = owner

        async def __aenter__(self) -> FakeTools:
            self.owner.opened += 1
            return self.owner.tools

        async def __aexit__(self, *exc) -> None:
            self.owner.closed += 1


def make_test(
    title: str = "search test",
    *,
    expected: tuple[str, ...] = (),
    runs: int = 1,
    provider: str = "openai",
    model_id: str = "gpt-4o",
    selected: tuple[str, ...] = (),
    timeout_ms: Optional[int] = None,
    max_steps: Optional[int] = None,
) -> TestCase:
    return TestCase(
        title=title,
        prompt=f"prompt for {title}",
        model=ModelDefinition(id=model_id, provider=provider),
        advanced=AdvancedConfig(timeout_ms=timeout_ms, max_steps=max_steps),
        expected_tools=expected,
        runs=runs,
        selected_servers=selected,
    )


def suite(*tests: TestCase) -> TestsFile:
    return TestsFile(tests=tuple(tests))


@pytest.fixture
def environment() -> EnvironmentFile:
    return EnvironmentFile(
        servers={"srv": StdioServer(command=sys.executable, args=("./server.py",))},
        provider_api_keys={"openai": "sk-test"},
    )
