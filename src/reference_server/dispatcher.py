"""
JSON-RPC Dispatcher

Turns inbound frames into calls against the tool registry and writes the
matching responses back through the transport.

Per-request lifecycle:
    RECEIVED -> VALIDATING -> EXECUTING -> RESPONDING -> DONE
with FAILED reachable from every non-terminal state. Notifications never
reach RESPONDING: they get no response, even on failure, but failures are
still recorded in the event log.

Scheduling is cooperative on a single event loop. Messages are parsed and
validated in arrival order inside the read loop; tool handlers then run as
separate tasks, so a handler suspended on I/O does not hold up the next
message. Responses may therefore complete out of order unless
``ordered_responses`` is configured.
"""

import asyncio
import functools
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from pydantic import ValidationError

from common.config import DispatcherConfig, ServerConfig
from common.event_log import EventLog
from common.logging import TimedLogger, get_logger
from .errors import (
    InternalError,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    NotInitializedError,
    RequestId,
    RequestTimeoutError,
    RPCError,
    ToolNotFoundError,
    TransportWriteError,
)
from .jsonrpc import (
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    JSONRPCHandler,
    JSONRPCNotification,
    JSONRPCRequest,
    MCPCancelledParams,
    MCPImplementation,
    MCPInitializeParams,
    MCPInitializeResult,
    MCPMethods,
    MCPToolsCallParams,
    MCPToolsListParams,
    MCPToolsListResult,
    validation_messages,
)
from .sequencer import ResponseSequencer
from .tool_registry import ToolDescriptor, ToolRegistry
from .transports.stdio import StdioTransport

logger = get_logger(__name__)


class RequestState(str, Enum):
    """Lifecycle states of one inbound message."""

    RECEIVED = "received"
    VALIDATING = "validating"
    EXECUTING = "executing"
    RESPONDING = "responding"
    DONE = "done"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    RequestState.RECEIVED: {RequestState.VALIDATING, RequestState.FAILED},
    RequestState.VALIDATING: {
        RequestState.EXECUTING,
        RequestState.RESPONDING,
        RequestState.DONE,
        RequestState.FAILED,
    },
    RequestState.EXECUTING: {RequestState.RESPONDING, RequestState.DONE, RequestState.FAILED},
    RequestState.RESPONDING: {RequestState.DONE, RequestState.FAILED},
    RequestState.DONE: set(),
    RequestState.FAILED: set(),
}


class SessionEnd(str, Enum):
    """Why serve() returned."""

    END_OF_STREAM = "end_of_stream"
    TRANSPORT_FAILED = "transport_failed"


@dataclass
class RequestContext:
    """Per-message state, discarded once the message reaches DONE or FAILED."""

    request_id: Optional[RequestId]
    method: str
    is_notification: bool = False
    sequence: Optional[int] = None
    state: RequestState = RequestState.RECEIVED
    task: Optional["asyncio.Task[None]"] = None
    cancelled: bool = False
    cancel_reason: Optional[str] = None

    def transition(self, new_state: RequestState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid request transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def describe(self) -> str:
        if self.is_notification:
            return f"Notification {self.method}"
        return f"Request {self.request_id} ({self.method})"


class Dispatcher:
    """
    Protocol state machine for one stdio session.

    Tracks a single piece of session state, the handshake
    (uninitialized -> initialized); every request except initialize is
    rejected with NotInitialized until the handshake has been answered.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        event_log: EventLog,
        server_config: Optional[ServerConfig] = None,
        config: Optional[DispatcherConfig] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            registry: Tool registry; must not change while serving
            event_log: Lifecycle event log
            server_config: Identity advertised on initialize
            config: Dispatch options (ordering, deadlines, pagination)
        """
        server_config = server_config or ServerConfig()
        self.registry = registry
        self.event_log = event_log
        self.config = config or DispatcherConfig()
        self.server_info = MCPImplementation(name=server_config.name, version=server_config.version)
        self.instructions = server_config.instructions
        self.capabilities: Dict[str, Any] = {"tools": {"listChanged": False}}

        self.initialized = False
        self.protocol_version: Optional[str] = None

        self._transport: Optional[StdioTransport] = None
        self._sequencer: Optional[ResponseSequencer] = (
            ResponseSequencer(self._send) if self.config.ordered_responses else None
        )
        self._inflight: Dict[RequestId, RequestContext] = {}
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._reader_task: Optional["asyncio.Task[None]"] = None
        self._session_error: Optional[TransportWriteError] = None

    @property
    def inflight_count(self) -> int:
        """Number of handler invocations still running."""
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    async def serve(self, transport: StdioTransport) -> SessionEnd:
        """
        Process messages until the input stream ends or a write fails.

        In-flight requests get ``shutdown_grace_period`` seconds to finish
        after end-of-stream; whatever is still running is then cancelled.
        """
        self._transport = transport
        self._reader_task = asyncio.ensure_future(self._read_loop(transport))

        try:
            await self._reader_task
        except asyncio.CancelledError:
            if self._session_error is None:
                raise

        if self._session_error is not None:
            await self.drain(0)
            return SessionEnd.TRANSPORT_FAILED

        await self.drain(self.config.shutdown_grace_period)
        return SessionEnd.END_OF_STREAM

    async def _read_loop(self, transport: StdioTransport) -> None:
        async for payload in transport.messages():
            await self.handle_message(payload)

    async def drain(self, timeout: float) -> None:
        """
        Wait up to ``timeout`` seconds for in-flight handlers, then cancel the rest.

        Response slots held by abandoned requests are released afterwards, so
        responses that already completed behind them are still written.
        """
        if self._tasks:
            pending = set(self._tasks)
            if timeout > 0:
                _, pending = await asyncio.wait(pending, timeout=timeout)

            for task in pending:
                task.cancel()
            if pending:
                logger.warning(event="inflight_requests_cancelled", count=len(pending))

            # Cancellation can schedule follow-up work (e.g. releasing a slot)
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if self._sequencer is not None and self._sequencer.outstanding:
            try:
                await self._sequencer.release_pending()
            except TransportWriteError as e:
                await self._on_transport_failure(e)

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def handle_message(self, raw: bytes) -> None:
        """Parse one frame and route it; never raises for peer mistakes."""
        try:
            message = JSONRPCHandler.parse_message(raw)
        except RPCError as e:
            logger.warning(event="malformed_message", error=e.message, request_id=e.request_id)
            if e.request_id is None:
                await self.event_log.record(f"Dropped malformed message: {e.message}")
                return
            ctx = self._new_context(e.request_id, "<invalid>")
            await self._fail(ctx, e)
            return

        if isinstance(message, JSONRPCRequest):
            await self._handle_request(message)
        elif isinstance(message, JSONRPCNotification):
            await self._handle_notification(message)
        else:
            # This server never sends requests, so there is nothing to correlate
            logger.warning(event="unexpected_response", id=message.id)
            await self.event_log.record(f"Ignored unsolicited response {message.id}")

    def _new_context(
        self, request_id: Optional[RequestId], method: str, is_notification: bool = False
    ) -> RequestContext:
        sequence = None
        if self._sequencer is not None and not is_notification:
            sequence = self._sequencer.reserve()
        return RequestContext(
            request_id=request_id,
            method=method,
            is_notification=is_notification,
            sequence=sequence,
        )

    async def _handle_request(self, request: JSONRPCRequest) -> None:
        ctx = self._new_context(request.id, request.method)
        logger.debug(event="jsonrpc_request", method=request.method, id=request.id)
        await self.event_log.record(f"Request {request.id}: {request.method}")

        ctx.transition(RequestState.VALIDATING)
        try:
            if request.id in self._inflight:
                raise InvalidRequestError(
                    f"Duplicate request id: {request.id}", data={"id": request.id}
                )

            if request.method == MCPMethods.INITIALIZE:
                await self._succeed(ctx, self._handle_initialize(request.params))
                return

            if not self.initialized:
                raise NotInitializedError(request.method)

            if request.method == MCPMethods.TOOLS_LIST:
                await self._succeed(ctx, self._handle_tools_list(request.params))
                return

            descriptor, arguments = self._resolve_call(request.method, request.params)
        except RPCError as e:
            await self._fail(ctx, e)
            return

        self._start_execution(ctx, descriptor, arguments)

    async def _handle_notification(self, notification: JSONRPCNotification) -> None:
        method = notification.method
        logger.debug(event="jsonrpc_notification", method=method)

        if method == MCPMethods.INITIALIZED:
            logger.info(event="client_ready", message="Client has completed initialization")
            await self.event_log.record("Client initialized")
            return

        if method == MCPMethods.CANCEL:
            await self._handle_cancel(notification.params)
            return

        if method.startswith("notifications/"):
            logger.debug(event="notification_ignored", method=method)
            return

        ctx = self._new_context(None, method, is_notification=True)
        await self.event_log.record(f"Notification: {method}")

        ctx.transition(RequestState.VALIDATING)
        try:
            if method in (MCPMethods.INITIALIZE, MCPMethods.TOOLS_LIST):
                raise InvalidRequestError(f"{method} must be sent as a request")
            if not self.initialized:
                raise NotInitializedError(method)
            descriptor, arguments = self._resolve_call(method, notification.params)
        except RPCError as e:
            await self._fail(ctx, e)
            return

        self._start_execution(ctx, descriptor, arguments)

    # ------------------------------------------------------------------
    # Built-in methods
    # ------------------------------------------------------------------

    def _handle_initialize(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Handle initialize request - capability advertisement."""
        try:
            init = MCPInitializeParams.model_validate(params or {})
        except ValidationError as e:
            raise InvalidParamsError(
                validation_messages(e), message="Invalid initialize params"
            ) from e

        if init.protocolVersion in SUPPORTED_PROTOCOL_VERSIONS:
            version = init.protocolVersion
        else:
            logger.warning(
                event="protocol_version_mismatch",
                client_version=init.protocolVersion,
                server_version=LATEST_PROTOCOL_VERSION,
            )
            version = LATEST_PROTOCOL_VERSION

        if self.initialized:
            logger.warning(event="client_reinitialized")

        self.initialized = True
        self.protocol_version = version

        logger.info(
            event="client_initialized",
            client_info=init.clientInfo.model_dump() if init.clientInfo else None,
            protocol_version=version,
        )

        result = MCPInitializeResult(
            protocolVersion=version,
            capabilities=self.capabilities,
            serverInfo=self.server_info,
            tools=self.registry.list_descriptors(),
            instructions=self.instructions,
        )
        return result.model_dump(exclude_none=True)

    def _handle_tools_list(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Handle tools/list request with cursor-based pagination."""
        try:
            list_params = MCPToolsListParams.model_validate(params or {})
        except ValidationError as e:
            raise InvalidParamsError(validation_messages(e)) from e

        all_tools = self.registry.list_descriptors()

        start_index = 0
        if list_params.cursor:
            try:
                start_index = int(list_params.cursor)
            except ValueError:
                start_index = -1
            if start_index < 0:
                raise InvalidParamsError(
                    [f"cursor: invalid cursor {list_params.cursor!r}"],
                    message="Invalid cursor format",
                )

        end_index = start_index + self.config.page_size
        next_cursor = str(end_index) if end_index < len(all_tools) else None

        result = MCPToolsListResult(tools=all_tools[start_index:end_index], nextCursor=next_cursor)
        return result.model_dump(exclude_none=True)

    async def _handle_cancel(self, params: Optional[Dict[str, Any]]) -> None:
        """Handle cancellation notification."""
        try:
            cancel = MCPCancelledParams.model_validate(params or {})
        except ValidationError as e:
            logger.warning(event="invalid_cancel_params", errors=validation_messages(e))
            return

        ctx = self._inflight.get(cancel.requestId)
        if ctx is None or ctx.task is None or ctx.state != RequestState.EXECUTING:
            logger.debug(event="cancel_for_unknown_request", request_id=cancel.requestId)
            return

        ctx.cancelled = True
        ctx.cancel_reason = cancel.reason
        ctx.task.cancel()
        logger.info(event="request_cancelled", request_id=cancel.requestId, reason=cancel.reason)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    def _resolve_call(
        self, method: str, params: Optional[Dict[str, Any]]
    ) -> Tuple[ToolDescriptor, Dict[str, Any]]:
        """Resolve a tools/call or direct tool invocation and validate its arguments."""
        if method == MCPMethods.TOOLS_CALL:
            try:
                call = MCPToolsCallParams.model_validate(params or {})
            except ValidationError as e:
                raise InvalidParamsError(
                    validation_messages(e), message="Invalid tools/call params"
                ) from e
            tool_name, arguments = call.name, call.arguments or {}
        else:
            tool_name, arguments = method, params or {}

        try:
            descriptor = self.registry.resolve(tool_name)
        except ToolNotFoundError:
            raise MethodNotFoundError(tool_name) from None

        errors = descriptor.validate(arguments)
        if errors:
            raise InvalidParamsError(errors)

        return descriptor, arguments

    def _start_execution(
        self, ctx: RequestContext, descriptor: ToolDescriptor, arguments: Dict[str, Any]
    ) -> None:
        ctx.transition(RequestState.EXECUTING)
        task = asyncio.ensure_future(self._execute(ctx, descriptor, arguments))
        ctx.task = task
        if not ctx.is_notification:
            self._inflight[ctx.request_id] = ctx
        self._track(task, ctx)

    def _track(self, task: "asyncio.Task[None]", ctx: Optional[RequestContext] = None) -> None:
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._task_done, ctx))

    def _task_done(self, ctx: Optional[RequestContext], task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            if ctx is not None:
                self._forget(ctx)
                if ctx.cancelled and ctx.state == RequestState.EXECUTING:
                    # Cancelled before the handler got to run
                    ctx.transition(RequestState.FAILED)
                    self._track(asyncio.ensure_future(self._finish_cancelled(ctx)))
            return
        error = task.exception()
        if error is not None:
            # Escaped every local handler: a defect, reported to the supervisor
            task.get_loop().call_exception_handler(
                {"message": "Unhandled error in request task", "exception": error, "task": task}
            )

    async def _invoke(self, descriptor: ToolDescriptor, arguments: Dict[str, Any]) -> Any:
        timeout = self.config.request_timeout
        if timeout is None:
            return await descriptor.invoke(arguments)

        invocation = asyncio.ensure_future(descriptor.invoke(arguments))
        try:
            done, _ = await asyncio.wait({invocation}, timeout=timeout)
        finally:
            if not invocation.done():
                # Best effort: side effects already committed are not rolled back
                invocation.cancel()

        if not done:
            raise RequestTimeoutError(
                f"Request timed out after {timeout}s", data={"timeout": timeout}
            )
        return invocation.result()

    async def _execute(
        self, ctx: RequestContext, descriptor: ToolDescriptor, arguments: Dict[str, Any]
    ) -> None:
        try:
            with TimedLogger(logger, "tool_executed", tool_name=descriptor.name, id=ctx.request_id):
                result = await self._invoke(descriptor, arguments)
        except asyncio.CancelledError:
            self._forget(ctx)
            if not ctx.cancelled:
                raise
            ctx.transition(RequestState.FAILED)
            await self._finish_cancelled(ctx)
            return
        except RequestTimeoutError as e:
            await self._fail(ctx, e)
            return
        except Exception as e:
            logger.exception(event="tool_execution_error", tool_name=descriptor.name, error=str(e))
            await self.event_log.record(
                f"Tool '{descriptor.name}' failed: {e}\n{traceback.format_exc().rstrip()}"
            )
            await self._fail(
                ctx,
                InternalError(
                    "Internal error", data={"tool": descriptor.name, "message": str(e)}
                ),
            )
            return

        await self._succeed(ctx, result)

    async def _finish_cancelled(self, ctx: RequestContext) -> None:
        """Peer cancelled the request: no response is sent for it."""
        await self.event_log.record(
            f"{ctx.describe()} cancelled by client: {ctx.cancel_reason or '<no reason>'}"
        )
        await self._release(ctx)

    # ------------------------------------------------------------------
    # Outbound responses
    # ------------------------------------------------------------------

    async def _succeed(self, ctx: RequestContext, result: Any) -> None:
        if ctx.is_notification:
            ctx.transition(RequestState.DONE)
            return

        try:
            payload = JSONRPCHandler.serialize(JSONRPCHandler.create_response(ctx.request_id, result))
        except (TypeError, ValueError) as e:
            logger.error(event="result_not_serializable", id=ctx.request_id, error=str(e))
            await self._fail(ctx, InternalError("Internal error: result is not serializable"))
            return

        ctx.transition(RequestState.RESPONDING)
        await self._deliver(ctx, payload)
        ctx.transition(RequestState.DONE)

    async def _fail(self, ctx: RequestContext, error: RPCError) -> None:
        ctx.transition(RequestState.FAILED)
        logger.warning(
            event="request_failed",
            id=ctx.request_id,
            method=ctx.method,
            code=error.code,
            error=error.message,
        )
        await self.event_log.record(f"{ctx.describe()} failed: {error.message}")

        if ctx.is_notification:
            return

        response = JSONRPCHandler.create_error_response(
            ctx.request_id, error.code, error.message, error.data
        )
        await self._deliver(ctx, JSONRPCHandler.serialize(response))

    def _forget(self, ctx: RequestContext) -> None:
        if ctx.request_id is not None and self._inflight.get(ctx.request_id) is ctx:
            del self._inflight[ctx.request_id]

    async def _deliver(self, ctx: RequestContext, payload: str) -> None:
        self._forget(ctx)
        try:
            if self._sequencer is not None and ctx.sequence is not None:
                await self._sequencer.complete(ctx.sequence, payload)
            else:
                await self._send(payload)
        except TransportWriteError as e:
            await self._on_transport_failure(e)

    async def _release(self, ctx: RequestContext) -> None:
        """Give up a reserved response slot without emitting anything."""
        if self._sequencer is None or ctx.sequence is None:
            return
        try:
            await self._sequencer.complete(ctx.sequence, None)
        except TransportWriteError as e:
            await self._on_transport_failure(e)

    async def _send(self, payload: str) -> None:
        if self._transport is None:
            raise TransportWriteError("No transport attached")
        await self._transport.send_message(payload)

    async def _on_transport_failure(self, error: TransportWriteError) -> None:
        """A broken output stream ends the session: stop reading, keep the process."""
        if self._session_error is not None:
            return
        self._session_error = error
        logger.error(event="session_transport_failed", error=str(error))
        await self.event_log.record(f"Transport write failed, closing session: {error}")
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
