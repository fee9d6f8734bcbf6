"""
Process Lifecycle Supervisor

Wires the event log, tool registry, dispatcher and stdio transport together,
owns startup and shutdown, and decides the process exit status:

- 0 when the input stream closes, on SIGTERM/SIGINT, or when a broken output
  stream ends the session
- 1 when a fault escapes every component-local handler

The supervisor never takes part in per-message processing.
"""

import asyncio
import os
import signal
import time
import traceback
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from common.config import Config, resolve_event_log_path
from common.event_log import EventLog
from common.logging import get_logger
from .dispatcher import Dispatcher, SessionEnd
from .tool_registry import ToolRegistry
from .tools import PingTool
from .transports.framing import get_framing
from .transports.stdio import StdioTransport, open_stdio_transport

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAULT = 1

TransportFactory = Callable[[Config], Awaitable[StdioTransport]]


def build_registry(event_log: EventLog) -> ToolRegistry:
    """Register every built-in tool and freeze the registry."""
    registry = ToolRegistry()
    registry.register_tool_handler(PingTool(event_log))
    registry.freeze()
    return registry


async def open_configured_stdio(config: Config) -> StdioTransport:
    """Bind the process's stdin/stdout with the configured framing."""
    framing = get_framing(config.transport.framing, config.transport.max_message_bytes)
    return await open_stdio_transport(framing)


class ServerSupervisor:
    """Startup, liveness reporting and shutdown for one server process."""

    def __init__(
        self,
        config: Config,
        transport_factory: Optional[TransportFactory] = None,
        event_log: Optional[EventLog] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize the supervisor.

        Args:
            config: Loaded configuration
            transport_factory: Coroutine building the transport (stdio by default)
            event_log: Event log to use instead of the configured file
            environ: Environment used to locate the home directory
        """
        self.config = config
        self.event_log = event_log or EventLog(
            resolve_event_log_path(config, environ), fsync=config.event_log.fsync
        )
        self.registry: Optional[ToolRegistry] = None
        self.dispatcher: Optional[Dispatcher] = None

        self._transport_factory = transport_factory or open_configured_stdio
        self._started_at = time.monotonic()
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_reason: Optional[str] = None
        self._fault: Optional[BaseException] = None

    @property
    def uptime(self) -> float:
        return time.monotonic() - self._started_at

    async def run(self) -> int:
        """Run the server until the session ends; returns the process exit status."""
        loop = asyncio.get_running_loop()
        self._started_at = time.monotonic()
        self._stop_event = asyncio.Event()

        # Truncate before any other component gets a chance to record
        self.event_log.open()
        await self.event_log.record("=== MCP Reference Server Starting ===")
        await self.event_log.record(f"PID: {os.getpid()}")
        await self.event_log.record(f"CWD: {os.getcwd()}")

        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)
        installed_signals = self._install_signal_handlers(loop)

        transport: Optional[StdioTransport] = None
        status_task: Optional["asyncio.Task[None]"] = None

        try:
            self.registry = build_registry(self.event_log)
            self.dispatcher = Dispatcher(
                self.registry, self.event_log, self.config.server, self.config.dispatcher
            )
            await self.event_log.record(
                f"Registered tools: {', '.join(d['name'] for d in self.registry.list_descriptors())}"
            )

            transport = await self._transport_factory(self.config)
            await self.event_log.record("Server ready")

            if self.config.event_log.status_interval > 0:
                status_task = asyncio.ensure_future(
                    self._report_status(self.config.event_log.status_interval)
                )

            await self._run_session(transport)
        except Exception as e:
            self._record_fault(e)
        finally:
            if status_task is not None:
                status_task.cancel()
                await asyncio.gather(status_task, return_exceptions=True)
            if self.dispatcher is not None:
                await self.dispatcher.drain(0)
            if transport is not None:
                await transport.close()
            for signum in installed_signals:
                loop.remove_signal_handler(signum)
            loop.set_exception_handler(previous_handler)

        exit_code = EXIT_FAULT if self._fault is not None else EXIT_OK
        if self._fault is not None:
            await self.event_log.record(f"Fatal error: {self._describe_fault()}")
        await self.event_log.record(f"Server exiting with code {exit_code}")
        self.event_log.close()

        logger.info(event="server_exiting", exit_code=exit_code, reason=self._stop_reason)
        return exit_code

    async def _run_session(self, transport: StdioTransport) -> None:
        """Serve until end-of-stream, a stop request, or a fault."""
        session = asyncio.ensure_future(self.dispatcher.serve(transport))
        stop_wait = asyncio.ensure_future(self._stop_event.wait())

        try:
            await asyncio.wait({session, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()

        if not session.done():
            session.cancel()
            await asyncio.gather(session, return_exceptions=True)
            if self._fault is None:
                await self.event_log.record(f"Shutdown requested: {self._stop_reason}")
            return

        # Re-raises anything that escaped the dispatcher
        session_end = session.result()
        if session_end == SessionEnd.END_OF_STREAM:
            self._stop_reason = "end_of_stream"
            await self.event_log.record("Client disconnected")
        else:
            self._stop_reason = "transport_failed"
            await self.event_log.record("Session closed: output stream is broken")

    async def _report_status(self, interval: float) -> None:
        """Periodic liveness entry; cancelled on shutdown."""
        while True:
            await asyncio.sleep(interval)
            await self.event_log.record(f"Status: uptime={self.uptime:.1f}s")

    def request_stop(self, reason: str) -> None:
        """Ask the running session to shut down cleanly."""
        if self._stop_reason is None:
            self._stop_reason = reason
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list:
        installed = []
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, self.request_stop, signal.Signals(signum).name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows, or not running in the main thread
                continue
            installed.append(signum)
        return installed

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        """Event loop exception handler: anything landing here is an unrecovered fault."""
        exception = context.get("exception")
        message = context.get("message", "Unhandled exception in event loop")
        logger.error(event="unhandled_loop_exception", message=message, error=repr(exception))

        if self._fault is None:
            self._fault = exception if exception is not None else RuntimeError(message)
        self.request_stop("fault")

    def _record_fault(self, error: BaseException) -> None:
        logger.critical(event="server_fault", error=str(error), error_type=type(error).__name__)
        if self._fault is None:
            self._fault = error
        self._stop_reason = "fault"

    def _describe_fault(self) -> str:
        fault = self._fault
        if fault is None:
            return ""
        details = "".join(traceback.format_exception(type(fault), fault, fault.__traceback__))
        return f"{fault}\n{details.rstrip()}"
