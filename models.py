"""models.py

Data models (dataclasses and enums) for the MCP evaluation engine.

Covers:
- ModelDefinition / AdvancedConfig / TestCase / TestsFile   - the loaded test suite
- StdioServer / HttpServer / EnvironmentFile                - the loaded environment
- ToolCall / AgentStepRecord / UsageTotals                  - per-iteration evidence
- Continuation / IterationStatus / IterationOutcome         - step loop results
- EvaluationResult / TestRunResult / SuiteOutcome           - judged results
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional, Union


# =========================
# Suite configuration (immutable once loaded)
# =========================


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    provider: str


@dataclass(frozen=True)
class AdvancedConfig:
    system: Optional[str] = None
    temperature: Optional[float] = None
    tool_choice: Optional[str] = None
    timeout_ms: Optional[int] = None
    max_steps: Optional[int] = None


@dataclass(frozen=True)
class TestCase:
    title: str
    prompt: str
    model: ModelDefinition
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)
    # Order of first appearance; duplicates carry no meaning.
    expected_tools: tuple[str, ...] = ()
    runs: int = 1
    selected_servers: tuple[str, ...] = ()

    __test__ = False  # not a pytest class

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TestsFile:
    tests: tuple[TestCase, ...] = ()

    __test__ = False


@dataclass(frozen=True)
class StdioServer:
    command: str
    args: tuple[str, ...] = ()
    env: Optional[dict[str, str]] = None


@dataclass(frozen=True)
class HttpServer:
    url: str
    headers: Optional[dict[str, str]] = None


ServerDescriptor = Union[StdioServer, HttpServer]


@dataclass(frozen=True)
class EnvironmentFile:
    servers: dict[str, ServerDescriptor] = field(default_factory=dict)
    provider_api_keys: dict[str, str] = field(default_factory=dict)


# =========================
# Step loop evidence
# =========================


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"


@dataclass
class AgentStepRecord:
    index: int
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[dict] = field(default_factory=list)


@dataclass
class UsageTotals:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(
        self,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> None:
        """Sum one step's usage. Missing counts leave the totals untouched."""
        if input_tokens is not None:
            self.input_tokens += input_tokens
        if output_tokens is not None:
            self.output_tokens += output_tokens
        if total_tokens is not None:
            self.total_tokens += total_tokens


class Continuation(Enum):
    CONTINUE = "continue"
    STOP = "stop"
    STEP_BUDGET_EXHAUSTED = "step_budget_exhausted"


class IterationStatus(Enum):
    DONE = "done"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"


@dataclass
class IterationOutcome:
    status: IterationStatus
    called_tools: list[str] = field(default_factory=list)
    messages: list[dict] = field(default_factory=list)
    steps: list[AgentStepRecord] = field(default_factory=list)
    # None on the backend-proxied path (usage is not reported there).
    usage: Optional[UsageTotals] = None
    error: Optional[str] = None


# =========================
# Judged results
# =========================


@dataclass(frozen=True)
class EvaluationResult:
    passed: bool
    expected_tool_calls: list[str]
    called_tools: list[str]
    missing_tools: list[str]
    unexpected_tools: list[str]


@dataclass(frozen=True)
class TestRunResult:
    title: str
    passed: bool
    duration_ms: int
    evaluation: EvaluationResult
    error: Optional[str] = None
    iteration: int = 1

    __test__ = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SuiteOutcome:
    results: list[TestRunResult] = field(default_factory=list)

    def record(self, result: TestRunResult) -> None:
        self.results.append(result)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def failures(self) -> int:
        return sum(1 for r in self.results if not r.passed)

    @property
    def passed(self) -> bool:
        return self.failures == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "total": self.total,
            "failures": self.failures,
            "results": [r.to_dict() for r in self.results],
        }
