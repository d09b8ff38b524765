"""errors.py

Error taxonomy for the evaluation engine.

Only configuration errors are fatal to a suite. Connection and step errors are
caught per test case / iteration and turn into failing results; persistence
errors never leave the recorder.
"""

from __future__ import annotations


class EvalHarnessError(Exception):
    """Base class for all engine errors."""


class ConfigValidationError(EvalHarnessError):
    """Malformed test/environment documents or unresolved ${VAR} placeholders."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}:\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)


class UnsupportedProviderError(EvalHarnessError):
    """A test references a model provider the engine cannot drive."""

    def __init__(self, offenders: list[tuple[str, str]]):
        self.offenders = offenders
        details = ", ".join(f"'{title}' ({provider})" for title, provider in offenders)
        super().__init__(f"Unsupported model provider in tests: {details}")


class ConnectionResolutionError(EvalHarnessError):
    """A referenced MCP server could not be turned into a usable connection."""


class StepExecutionError(EvalHarnessError):
    """Model or backend failure inside the agent step loop."""


class StepTimeoutError(StepExecutionError):
    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Timed out after {timeout_ms}ms")


class PersistenceError(EvalHarnessError):
    """Remote result tracker rejected or failed a call."""
