"""agent.py

Async agent step loop for the MCP evaluation engine.

Drives the model <-> MCP tool conversation for a single test iteration:
1. Sends the full history and tool catalog to the model (one step).
2. Records every tool call the model requested in that step.
3. Executes each tool call that has no result yet and feeds the results back.
4. Decides whether to continue, stop, or stop on an exhausted step budget.
5. Returns an IterationOutcome (never raises), including timeouts and errors.

Two step models share the loop:
- ChatCompletionsStepModel  - direct path, streams chat completions from the provider.
- BackendStepModel          - proxied path, one HTTP round trip per step to the
                              evaluation backend; no usage accounting.

Each step model keeps the history in its own wire format and exposes a
HistoryFormat that reads tool calls / results out of it and builds result turns:
- CHAT_COMPLETIONS  - ``tool_calls`` on assistant turns, one ``tool`` turn per result.
- MODEL_MESSAGES    - ``tool-call`` / ``tool-result`` content parts, as the backend sends them.
"""

from __future__ import annotations

import asyncio
import json
import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
from openai import NOT_GIVEN, AsyncOpenAI
from openai.types.chat import (
    ChatCompletionFunctionToolParam,
    ChatCompletionSystemMessageParam,
    ChatCompletionUserMessageParam,
)

from config import (
    BACKEND_REQUEST_TIMEOUT_S,
    DEFAULT_SYSTEM_PROMPT,
    PROVIDER_BASE_URLS,
    logger,
)
from errors import StepExecutionError, StepTimeoutError
from models import (
    AgentStepRecord,
    Continuation,
    EnvironmentFile,
    IterationOutcome,
    IterationStatus,
    TestCase,
    ToolCall,
    UsageTotals,
)
from utils import _safe_json_dumps


# =========================
# Seams
# =========================


@dataclass
class StepResponse:
    """New conversation turns produced by one model step."""

    turns: list[dict]
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class StepModel(Protocol):
    reports_usage: bool
    history: HistoryFormat

    def opening_messages(self, prompt: str) -> list[dict]: ...

    async def step(self, messages: list[dict]) -> StepResponse: ...

    async def aclose(self) -> None: ...


class ToolExecutor(Protocol):
    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any: ...


# =========================
# History helpers
# =========================


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text")
    return ""


def tool_calls_of(message: dict) -> list[ToolCall]:
    calls = []
    for tc in message.get("tool_calls") or []:
        fn = tc.get("function") or {}
        if fn.get("name"):
            calls.append(ToolCall(id=tc.get("id") or "", name=fn["name"], arguments=fn.get("arguments") or "{}"))
    return calls


def _content_parts(turn: dict, role: str, part_type: str) -> list[dict]:
    content = turn.get("content")
    if turn.get("role") != role or not isinstance(content, list):
        return []
    return [p for p in content if isinstance(p, dict) and p.get("type") == part_type]


class HistoryFormat:
    """Where tool calls and tool results live in one wire format."""

    def tool_calls(self, turn: dict) -> list[ToolCall]:
        raise NotImplementedError

    def resolved_ids(self, turn: dict) -> list[str]:
        raise NotImplementedError

    def result_turn(self, call: ToolCall, result: Any, error: Optional[str]) -> dict:
        raise NotImplementedError


class _ChatCompletionsHistory(HistoryFormat):
    def tool_calls(self, turn):
        return tool_calls_of(turn) if turn.get("role") == "assistant" else []

    def resolved_ids(self, turn):
        if turn.get("role") == "tool" and turn.get("tool_call_id"):
            return [turn["tool_call_id"]]
        return []

    def result_turn(self, call, result, error):
        return {"role": "tool", "tool_call_id": call.id, "content": _safe_json_dumps(result)}


class _ModelMessagesHistory(HistoryFormat):
    def tool_calls(self, turn):
        calls = []
        for part in _content_parts(turn, "assistant", "tool-call"):
            if not part.get("toolName"):
                continue
            args = part.get("input") or {}
            calls.append(
                ToolCall(
                    id=part.get("toolCallId") or "",
                    name=part["toolName"],
                    arguments=args if isinstance(args, str) else _safe_json_dumps(args),
                )
            )
        return calls

    def resolved_ids(self, turn):
        return [p.get("toolCallId") for p in _content_parts(turn, "tool", "tool-result")]

    def result_turn(self, call, result, error):
        if error is not None:
            output = {"type": "error-text", "value": error}
        elif isinstance(result, str):
            output = {"type": "text", "value": result}
        else:
            output = {"type": "json", "value": result}
        return {
            "role": "tool",
            "content": [{"type": "tool-result", "toolCallId": call.id, "toolName": call.name, "output": output}],
        }


CHAT_COMPLETIONS: HistoryFormat = _ChatCompletionsHistory()
MODEL_MESSAGES: HistoryFormat = _ModelMessagesHistory()


def unresolved_tool_calls(messages: list[dict], history: HistoryFormat = CHAT_COMPLETIONS) -> list[ToolCall]:
    """Tool calls anywhere in history with no matching tool result."""
    resolved = {i for m in messages for i in history.resolved_ids(m)}
    return [call for m in messages for call in history.tool_calls(m) if call.id not in resolved]


def decide_continuation(*, requested: int, dispatched: int, steps_taken: int, max_steps: int) -> Continuation:
    if requested == 0:
        return Continuation.STOP
    # Tool use requested but nothing left to run: a silently dropped call would loop forever.
    if dispatched == 0:
        return Continuation.STOP
    if steps_taken >= max_steps:
        return Continuation.STEP_BUDGET_EXHAUSTED
    return Continuation.CONTINUE


def _generated_call_id() -> str:
    return f"tc_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


# =========================
# Tool execution
# =========================


async def _execute_tool_call(tools: ToolExecutor, call: ToolCall) -> tuple[Any, Optional[str]]:
    """Run one call; returns the result payload and, on failure, the error message."""
    try:
        args = json.loads(call.arguments or "{}")
        if not isinstance(args, dict):
            raise ValueError("Tool arguments must be a JSON object.")
    except ValueError:
        # Synthetic tool response; the backend is never called with unparseable input.
        message = "Tool arguments JSON could not be parsed."
        return {"success": False, "error": {"type": "InvalidToolArguments", "message": message}}, message

    try:
        return await tools.call_tool(call.name, args), None
    except Exception as e:
        logger.warning("Tool %s failed: %s", call.name, e)
        message = str(e) or type(e).__name__
        return {"success": False, "error": {"type": type(e).__name__, "message": message}}, message


# =========================
# Step loop
# =========================


@dataclass
class _IterationState:
    messages: list[dict]
    usage: Optional[UsageTotals]
    called_tools: list[str] = field(default_factory=list)
    steps: list[AgentStepRecord] = field(default_factory=list)

    def finish(self, status: IterationStatus, error: Optional[str] = None) -> IterationOutcome:
        return IterationOutcome(
            status=status,
            called_tools=list(self.called_tools),
            messages=list(self.messages),
            steps=list(self.steps),
            usage=self.usage,
            error=error,
        )


async def _drive_steps(
    state: _IterationState,
    step_model: StepModel,
    tools: ToolExecutor,
    max_steps: int,
) -> Continuation:
    for step_index in range(1, max_steps + 1):
        response = await step_model.step(list(state.messages))
        if state.usage is not None:
            state.usage.add(response.input_tokens, response.output_tokens, response.total_tokens)

        history = step_model.history
        record = AgentStepRecord(index=step_index)
        for turn in response.turns:
            state.messages.append(turn)
            if turn.get("role") == "assistant":
                record.text += _content_text(turn.get("content"))
            record.tool_calls.extend(history.tool_calls(turn))
        state.called_tools.extend(c.name for c in record.tool_calls)

        pending = unresolved_tool_calls(state.messages, history)
        for call in pending:
            result, error = await _execute_tool_call(tools, call)
            result_turn = history.result_turn(call, result, error)
            state.messages.append(result_turn)
            record.tool_results.append(result_turn)
        state.steps.append(record)

        decision = decide_continuation(
            requested=len(record.tool_calls),
            dispatched=len(pending),
            steps_taken=step_index,
            max_steps=max_steps,
        )
        if decision is not Continuation.CONTINUE:
            if decision is Continuation.STEP_BUDGET_EXHAUSTED:
                logger.info("Step budget of %d exhausted", max_steps)
            return decision
    return Continuation.STEP_BUDGET_EXHAUSTED


async def run_iteration(
    *,
    step_model: StepModel,
    tools: ToolExecutor,
    prompt: str,
    max_steps: int,
    timeout_ms: int,
) -> IterationOutcome:
    """Run one prompt through the step loop under its own deadline."""
    state = _IterationState(
        messages=step_model.opening_messages(prompt),
        usage=UsageTotals() if step_model.reports_usage else None,
    )
    try:
        await asyncio.wait_for(_drive_steps(state, step_model, tools, max_steps), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        err = StepTimeoutError(timeout_ms)
        logger.warning("Iteration aborted: %s", err)
        return state.finish(IterationStatus.TIMED_OUT, str(err))
    except Exception as e:
        logger.error("Iteration failed: %s", e)
        return state.finish(IterationStatus.ERRORED, str(e) or type(e).__name__)
    return state.finish(IterationStatus.DONE)


# =========================
# Direct path
# =========================


def _tool_choice_param(tool_choice: str) -> Any:
    if tool_choice in ("auto", "none", "required"):
        return tool_choice
    return {"type": "function", "function": {"name": tool_choice}}


class ChatCompletionsStepModel:
    reports_usage = True
    history = CHAT_COMPLETIONS

    def __init__(
        self,
        *,
        client: AsyncOpenAI,
        model_id: str,
        tools: list[ChatCompletionFunctionToolParam],
        system_prompt: str,
        temperature: Optional[float] = None,
        tool_choice: Optional[str] = None,
    ):
        self._client = client
        self._model_id = model_id
        self._tools = tools
        self._system_prompt = system_prompt
        self._temperature = temperature
        self._tool_choice = tool_choice

    def opening_messages(self, prompt: str) -> list[dict]:
        return [
            ChatCompletionSystemMessageParam(role="system", content=self._system_prompt),
            ChatCompletionUserMessageParam(role="user", content=prompt),
        ]

    async def step(self, messages: list[dict]) -> StepResponse:
        stream = await self._client.chat.completions.create(
            model=self._model_id,
            messages=messages,
            tools=self._tools or NOT_GIVEN,
            tool_choice=_tool_choice_param(self._tool_choice) if self._tools and self._tool_choice else NOT_GIVEN,
            temperature=NOT_GIVEN if self._temperature is None else self._temperature,
            stream=True,
            stream_options={"include_usage": True},
        )

        text_parts: list[str] = []
        calls: dict[int, dict] = {}
        usage = None
        async for chunk in stream:
            if chunk.usage is not None:
                usage = chunk.usage
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                text_parts.append(delta.content)
            for tc in delta.tool_calls or []:
                slot = calls.setdefault(
                    tc.index, {"id": "", "type": "function", "function": {"name": "", "arguments": ""}}
                )
                if tc.id:
                    slot["id"] = tc.id
                if tc.function is not None:
                    slot["function"]["name"] += tc.function.name or ""
                    slot["function"]["arguments"] += tc.function.arguments or ""

        message: dict[str, Any] = {"role": "assistant", "content": "".join(text_parts) or None}
        if calls:
            message["tool_calls"] = [calls[i] for i in sorted(calls)]
            for tc in message["tool_calls"]:
                tc["id"] = tc["id"] or _generated_call_id()
                tc["function"]["arguments"] = tc["function"]["arguments"] or "{}"
        elif message["content"] is None:
            message["content"] = ""

        return StepResponse(
            turns=[message],
            input_tokens=getattr(usage, "prompt_tokens", None),
            output_tokens=getattr(usage, "completion_tokens", None),
            total_tokens=getattr(usage, "total_tokens", None),
        )

    async def aclose(self) -> None:
        await self._client.close()


# =========================
# Backend-proxied path
# =========================


def _with_call_ids(turn: dict) -> dict:
    """Copy of a backend turn whose ``tool-call`` parts all carry a ``toolCallId``."""
    turn = dict(turn)
    if turn.get("role") == "assistant" and isinstance(turn.get("content"), list):
        turn["content"] = [
            {**p, "toolCallId": _generated_call_id()}
            if isinstance(p, dict) and p.get("type") == "tool-call" and not p.get("toolCallId")
            else p
            for p in turn["content"]
        ]
    return turn


class BackendStepModel:
    reports_usage = False
    history = MODEL_MESSAGES

    def __init__(
        self,
        *,
        url: str,
        model_id: str,
        tool_definitions: list[dict[str, Any]],
        token: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = url.rstrip("/") + "/stream"
        self._model_id = model_id
        self._tool_definitions = tool_definitions
        self._token = token
        self._system_prompt = system_prompt
        self._temperature = temperature
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=BACKEND_REQUEST_TIMEOUT_S)

    def opening_messages(self, prompt: str) -> list[dict]:
        return [{"role": "user", "content": prompt}]

    async def step(self, messages: list[dict]) -> StepResponse:
        payload: dict[str, Any] = {
            "mode": "step",
            "messages": _safe_json_dumps(messages),
            "model": self._model_id,
            "tools": self._tool_definitions,
        }
        if self._system_prompt:
            payload["systemPrompt"] = self._system_prompt
        if self._temperature is not None:
            payload["temperature"] = self._temperature

        headers = {"content-type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            resp = await self._http.post(self._url, content=_safe_json_dumps(payload), headers=headers)
        except httpx.HTTPError as e:
            raise StepExecutionError(f"Backend request failed: {e}") from e
        if resp.status_code >= 400:
            raise StepExecutionError(f"Backend step failed: HTTP {resp.status_code} {resp.reason_phrase}")
        try:
            body = resp.json()
        except ValueError as e:
            raise StepExecutionError("Invalid backend response payload") from e
        if not isinstance(body, dict) or not body.get("ok") or not isinstance(body.get("messages"), list):
            raise StepExecutionError("Invalid backend response payload")

        turns = [_with_call_ids(m) for m in body["messages"] if isinstance(m, dict)]
        return StepResponse(turns=turns)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


# =========================
# Path selection
# =========================


def build_step_model(
    test: TestCase,
    environment: EnvironmentFile,
    tool_backend: Any,
    *,
    first_party_models: frozenset[str],
    backend_url: Optional[str] = None,
    backend_token: Optional[str] = None,
) -> StepModel:
    """Pick the execution path for a test case, once, from the allow-list."""
    adv = test.advanced
    if test.model.id in first_party_models:
        if not backend_url:
            raise StepExecutionError(
                f"Model {test.model.id} is served by the evaluation backend but no backend URL is configured"
            )
        logger.info("Test '%s': backend-proxied path (%s)", test.title, test.model.id)
        return BackendStepModel(
            url=backend_url,
            token=backend_token,
            model_id=test.model.id,
            tool_definitions=tool_backend.tool_definitions(),
            system_prompt=adv.system,
            temperature=adv.temperature,
        )

    provider = test.model.provider
    api_key = environment.provider_api_keys.get(provider) or os.getenv(f"{provider.upper()}_API_KEY")
    if not api_key:
        raise StepExecutionError(f"Missing API key for provider {provider} (test: {test.title})")

    logger.info("Test '%s': direct path (%s/%s)", test.title, provider, test.model.id)
    return ChatCompletionsStepModel(
        client=AsyncOpenAI(api_key=api_key, base_url=PROVIDER_BASE_URLS.get(provider)),
        model_id=test.model.id,
        tools=tool_backend.openai_tools(),
        system_prompt=adv.system or DEFAULT_SYSTEM_PROMPT,
        temperature=adv.temperature,
        tool_choice=adv.tool_choice,
    )
