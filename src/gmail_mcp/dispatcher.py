"""Newline-delimited JSON-RPC dispatcher for the MCP stdio transport.

The reader loop decodes one frame at a time and spawns a task per request,
so a slow tool call never holds up the stream. Responses are written under a
lock, one complete line at a time, in completion order; clients correlate
them by id.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from mcp import types
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from pydantic import BaseModel, ValidationError

from .errors import AuthError, Malformed, ProviderError, ToolNotFound
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

RequestId = str | int


@dataclass(frozen=True)
class PendingRequest:
    id: RequestId
    method: str
    submitted_at: float


def _readable_id(data: Any) -> RequestId | None:
    if isinstance(data, dict):
        request_id = data.get("id")
        if isinstance(request_id, (str, int)) and not isinstance(request_id, bool):
            return request_id
    return None


def error_response(
    request_id: RequestId | None, code: int, message: str, kind: str
) -> dict:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message, "data": {"kind": kind}},
    }


def result_response(request_id: RequestId, result: dict) -> dict:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def _dump(model: BaseModel) -> dict:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def tool_result(result: dict) -> dict:
    text = json.dumps(result, indent=2, ensure_ascii=False, default=str)
    return _dump(
        types.CallToolResult(
            content=[types.TextContent(type="text", text=text)],
            structuredContent=result,
            isError=False,
        )
    )


def tool_error(error: AuthError | ProviderError) -> dict:
    return _dump(
        types.CallToolResult(
            content=[
                types.TextContent(type="text", text=f"{error.kind}: {error.message}")
            ],
            structuredContent={
                "error": {"kind": error.kind, "message": error.message}
            },
            isError=True,
        )
    )


class Dispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        reader: asyncio.StreamReader,
        writer: Any,
        server_name: str,
        server_version: str,
    ):
        self._registry = registry
        self._reader = reader
        self._writer = writer
        self._server_name = server_name
        self._server_version = server_version
        self._write_lock = asyncio.Lock()
        self._pending: dict[RequestId, PendingRequest] = {}
        self._tasks: set[asyncio.Task] = set()
        self._methods = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
        }

    @property
    def pending(self) -> MappingProxyType:
        return MappingProxyType(self._pending)

    async def run(self) -> None:
        """Serve until EOF, then wait for in-flight calls."""
        logger.info("Dispatcher started, waiting for requests on stdin")
        try:
            while True:
                try:
                    line = await self._reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as e:
                    line = e.partial
                except asyncio.LimitOverrunError as e:
                    logger.warning(f"Frame exceeds maximum message size, skipping: {e}")
                    await self._write(
                        error_response(
                            None, types.PARSE_ERROR, "Message too large", Malformed.kind
                        )
                    )
                    if not await self._skip_line(e.consumed):
                        logger.info("Input closed inside an oversized frame")
                        break
                    continue
                if not line:
                    logger.info("Input closed")
                    break
                if not line.strip():
                    continue
                await self._handle_line(line)
        finally:
            if self._tasks:
                logger.info(f"Waiting for {len(self._tasks)} in-flight request(s)")
                await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _skip_line(self, consumed: int) -> bool:
        """Discard the rest of an oversized line, through its newline.

        Returns False when the input ends before the newline arrives.
        """
        while True:
            try:
                await self._reader.readexactly(consumed)
                await self._reader.readuntil(b"\n")
                return True
            except asyncio.LimitOverrunError as e:
                consumed = e.consumed
            except asyncio.IncompleteReadError:
                return False

    async def _handle_line(self, line: bytes) -> None:
        try:
            data = json.loads(line.decode("utf-8"))
        except ValueError as e:
            logger.warning(f"Unparsable message: {e}")
            await self._write(
                error_response(
                    None, types.PARSE_ERROR, f"Parse error: {e}", Malformed.kind
                )
            )
            return

        if (
            isinstance(data, dict)
            and "method" not in data
            and ("result" in data or "error" in data)
        ):
            logger.debug(f"Ignoring response message with id {data.get('id')!r}")
            return

        try:
            if isinstance(data, dict) and "id" in data:
                message = types.JSONRPCRequest.model_validate(data)
            else:
                message = types.JSONRPCNotification.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid JSON-RPC message: {e}")
            await self._write(
                error_response(
                    _readable_id(data),
                    types.INVALID_REQUEST,
                    "Invalid request",
                    Malformed.kind,
                )
            )
            return

        if isinstance(message, types.JSONRPCNotification):
            logger.debug(f"Received notification {message.method}")
            return

        if message.id in self._pending:
            logger.warning(f"Rejecting request with duplicate id {message.id!r}")
            await self._write(
                error_response(
                    message.id,
                    types.INVALID_REQUEST,
                    f"Duplicate request id: {message.id}",
                    Malformed.kind,
                )
            )
            return

        self._pending[message.id] = PendingRequest(
            message.id, message.method, time.monotonic()
        )
        task = asyncio.create_task(self._handle_request(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_request(self, request: types.JSONRPCRequest) -> None:
        try:
            response = await self._respond(request)
            await self._write(response)
        finally:
            pending = self._pending.pop(request.id, None)
            if pending is not None:
                elapsed = time.monotonic() - pending.submitted_at
                logger.debug(
                    f"{pending.method} ({pending.id!r}) finished in {elapsed:.3f}s"
                )

    async def _respond(self, request: types.JSONRPCRequest) -> dict:
        handler = self._methods.get(request.method)
        if handler is None:
            return error_response(
                request.id,
                types.METHOD_NOT_FOUND,
                f"Method not found: {request.method}",
                "NotFound",
            )
        try:
            result = await handler(request.params or {})
        except (ToolNotFound, Malformed) as e:
            return error_response(request.id, types.INVALID_PARAMS, e.message, e.kind)
        except Exception as e:
            logger.exception(f"Unhandled error while serving {request.method}")
            return error_response(
                request.id,
                types.INTERNAL_ERROR,
                f"Internal error: {e}",
                "InternalError",
            )
        return result_response(request.id, result)

    async def _write(self, message: dict) -> None:
        data = json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n"
        async with self._write_lock:
            try:
                self._writer.write(data.encode("utf-8"))
                await self._writer.drain()
            except ConnectionError as e:
                logger.error(f"Failed to write response: {e}")

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    async def _initialize(self, params: dict) -> dict:
        requested = params.get("protocolVersion")
        if requested in SUPPORTED_PROTOCOL_VERSIONS:
            version = requested
        else:
            version = types.LATEST_PROTOCOL_VERSION
        client_info = params.get("clientInfo") or {}
        client_name = client_info.get("name", "unknown client")
        logger.info(f"Initialize from {client_name}, protocol version {version}")
        return _dump(
            types.InitializeResult(
                protocolVersion=version,
                capabilities=types.ServerCapabilities(
                    tools=types.ToolsCapability(listChanged=False)
                ),
                serverInfo=types.Implementation(
                    name=self._server_name, version=self._server_version
                ),
            )
        )

    async def _ping(self, params: dict) -> dict:
        return {}

    async def _list_tools(self, params: dict) -> dict:
        tools = [
            types.Tool(
                name=d.name, description=d.description, inputSchema=d.input_schema
            )
            for d in self._registry.descriptors()
        ]
        return _dump(types.ListToolsResult(tools=tools))

    async def _call_tool(self, params: dict) -> dict:
        try:
            call = types.CallToolRequestParams.model_validate(params)
        except ValidationError as e:
            raise Malformed(f"Invalid tools/call params: {e}") from e

        descriptor = self._registry.resolve(call.name)
        logger.info(f"Calling tool {call.name}")
        try:
            result = await self._registry.invoke(descriptor, call.arguments)
        except (AuthError, ProviderError) as e:
            logger.warning(f"Tool {call.name} failed: {e.kind}: {e.message}")
            return tool_error(e)
        return tool_result(result)
