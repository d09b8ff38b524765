"""mcp_setup.py

MCP connection resolution and the per-test-case tool backend.

Responsibilities:
- Turn a test's selected environment servers into concrete connection descriptors
  (resolved executables, absolute script arguments, structured URLs + headers)
- Give every connection a collision-free server id
- Connect one fastmcp client per server and enumerate the combined tool catalog
- Convert MCP tool schemas into OpenAI ChatCompletion tool definitions
- Execute tool calls against the owning server
"""

from __future__ import annotations

import os
import random
import re
import shutil
import string
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import httpx
from fastmcp import Client
from fastmcp.client.transports import SSETransport, StdioTransport, StreamableHttpTransport
from mcp.types import Tool
from openai.types.chat import ChatCompletionFunctionToolParam
from openai.types.shared_params import FunctionDefinition

from config import logger
from errors import ConnectionResolutionError
from models import EnvironmentFile, HttpServer, StdioServer, TestCase

_EMPTY_OBJECT_SCHEMA = {"type": "object", "properties": {}, "additionalProperties": False}


# =========================
# Connection descriptors
# =========================


@dataclass(frozen=True)
class StdioConnection:
    server_id: str
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Optional[dict[str, str]] = None


@dataclass(frozen=True)
class HttpConnection:
    server_id: str
    name: str
    url: httpx.URL
    request_init: dict[str, Any] = field(default_factory=dict)


ServerConnection = Union[StdioConnection, HttpConnection]


# =========================
# Resolution
# =========================


def resolve_command(command: str) -> str:
    if os.path.isabs(command) and os.path.isfile(command) and os.access(command, os.X_OK):
        return command
    found = shutil.which(command)
    if found:
        return found
    raise ConnectionResolutionError(f"Command not found or not executable: {command}")


def resolve_args(args: tuple[str, ...], workspace_root: str) -> tuple[str, ...]:
    return tuple(
        os.path.abspath(os.path.join(workspace_root, a)) if a.startswith(("./", "../")) else a
        for a in args
    )


def parse_server_url(url: str) -> httpx.URL:
    try:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError("expected an http(s) URL with a host")
        # Query and fragment are dropped; servers are addressed by path only.
        return httpx.URL(urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")))
    except (ValueError, httpx.InvalidURL) as e:
        raise ConnectionResolutionError(f"Invalid URL format: {url} ({e})") from e


def normalize_server_name(name: str) -> str:
    name = re.sub(r"[\s\-]+", "_", name.lower())
    return re.sub(r"[^a-z0-9_]", "", name)


def _base36(n: int) -> str:
    digits = string.digits + string.ascii_lowercase
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"


def make_server_id(name: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{normalize_server_name(name)}_{_base36(int(time.time() * 1000))}_{suffix}"


def resolve_connections(
    test: TestCase,
    environment: EnvironmentFile,
    workspace_root: str,
) -> dict[str, ServerConnection]:
    """Connections for the servers a test selects (all servers when it selects none)."""
    names = list(test.selected_servers) or list(environment.servers)
    unknown = [n for n in names if n not in environment.servers]
    if unknown:
        logger.warning("Test '%s' selects unknown servers: %s", test.title, ", ".join(unknown))

    connections: dict[str, ServerConnection] = {}
    for name in names:
        server = environment.servers.get(name)
        if server is None:
            continue
        server_id = make_server_id(name)
        while server_id in connections:
            server_id = make_server_id(name)
        if isinstance(server, StdioServer):
            connections[server_id] = StdioConnection(
                server_id=server_id,
                name=name,
                command=resolve_command(server.command),
                args=resolve_args(server.args, workspace_root),
                env=server.env,
            )
        elif isinstance(server, HttpServer):
            connections[server_id] = HttpConnection(
                server_id=server_id,
                name=name,
                url=parse_server_url(server.url),
                request_init={"headers": dict(server.headers)} if server.headers else {},
            )

    if not connections:
        raise ConnectionResolutionError("No valid MCP server configs for test")
    return connections


def _make_client(conn: ServerConnection) -> Client:
    if isinstance(conn, StdioConnection):
        transport = StdioTransport(command=conn.command, args=list(conn.args), env=conn.env)
    elif conn.url.path.rstrip("/").endswith("/sse"):
        transport = SSETransport(url=str(conn.url), headers=conn.request_init.get("headers"))
    else:
        transport = StreamableHttpTransport(url=str(conn.url), headers=conn.request_init.get("headers"))
    return Client(transport)


# =========================
# Tool backend
# =========================


class ToolBackend:
    """The tools of every MCP server selected for one test case.

    Connected once per test case and shared read-only by its repetitions.
    """

    def __init__(self, connections: dict[str, ServerConnection]):
        self._connections = connections
        self._clients: dict[str, Client] = {}
        self._owner: dict[str, str] = {}
        self._tools: list[Tool] = []
        self._stack: Optional[AsyncExitStack] = None

    async def __aenter__(self) -> "ToolBackend":
        self._stack = AsyncExitStack()
        try:
            for server_id, conn in self._connections.items():
                client = _make_client(conn)
                await self._stack.enter_async_context(client)
                self._clients[server_id] = client
                for tool in await client.list_tools():
                    if tool.name in self._owner:
                        raise ConnectionResolutionError(
                            f"Duplicate tool name detected across servers: {tool.name}"
                        )
                    self._owner[tool.name] = server_id
                    self._tools.append(tool)
        except BaseException:
            await self._stack.aclose()
            raise
        logger.info("Loaded %d MCP tools from %d servers", len(self._tools), len(self._clients))
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stack is not None:
            await self._stack.aclose()

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools)

    def openai_tools(self) -> list[ChatCompletionFunctionToolParam]:
        return [
            ChatCompletionFunctionToolParam(
                type="function",
                function=FunctionDefinition(
                    name=t.name,
                    description=t.description or "",
                    parameters=t.inputSchema or _EMPTY_OBJECT_SCHEMA,
                ),
            )
            for t in self._tools
        ]

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Serialized tool definitions for the evaluation backend."""
        return [
            {
                "name": t.name,
                "description": t.description,
                "inputSchema": t.inputSchema or _EMPTY_OBJECT_SCHEMA,
            }
            for t in self._tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        server_id = self._owner.get(name)
        if server_id is None:
            raise KeyError(f"Tool '{name}' not found")
        result = await self._clients[server_id].call_tool(name, arguments)
        if result.data is not None:
            return result.data
        if result.structured_content is not None:
            return result.structured_content
        texts = [getattr(block, "text", None) for block in result.content]
        return "\n".join(t for t in texts if t is not None)


def connect_tool_backend(connections: dict[str, ServerConnection]) -> ToolBackend:
    return ToolBackend(connections)
