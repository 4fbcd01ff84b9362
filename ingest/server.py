"""
Process lifecycle: bind, serve, and shut down gracefully.

States move strictly forward:

    STARTING -> RUNNING -> SHUTTING_DOWN -> STOPPED

The stop trigger is an ``asyncio.Event``. ``serve()`` wires SIGINT and
SIGTERM to one when the caller does not pass its own, so tests can drive
shutdown without sending signals.
"""
import asyncio
import contextlib
import functools
import signal
import socket
from enum import Enum
from typing import Callable

import structlog
import uvicorn

from .config import SHUTDOWN_GRACE_SECONDS, parse_http_addr

log = structlog.get_logger()


class ListenError(Exception):
    """The listener could not be bound. Fatal at startup."""


class LifecycleState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to the lifecycle."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class Lifecycle:
    """
    Runs an ASGI app on a listener until told to stop.

    Binding failures raise ``ListenError``. Once running, a stop request
    closes the listener at once, gives in-flight requests up to
    ``grace_period`` seconds to finish and cancels the rest.
    """

    def __init__(self, app, addr: str, grace_period: float = SHUTDOWN_GRACE_SECONDS):
        self.app = app
        self.addr = addr
        self.grace_period = grace_period
        self.state = LifecycleState.STARTING
        self.server: _Server | None = None
        self._socket: socket.socket | None = None

    @property
    def bound_address(self) -> tuple[str, int] | None:
        """Host and port actually bound, useful with port 0."""
        if self._socket is None or self._socket.fileno() == -1:
            return None
        host, port = self._socket.getsockname()[:2]
        return host, port

    def bind(self) -> socket.socket:
        """
        Bind the listening socket.

        Raises:
            ListenError: If the address is invalid or cannot be bound
        """
        try:
            host, port = parse_http_addr(self.addr)
        except ValueError as exc:
            raise ListenError(str(exc)) from exc

        try:
            sock = _listen(host, port)
        except OSError as exc:
            raise ListenError(f"cannot listen on {self.addr}: {exc}") from exc

        self._socket = sock
        log.info("listener.bound", addr=self.addr, port=sock.getsockname()[1])
        return sock

    async def serve(self, stop: asyncio.Event | None = None) -> None:
        """
        Serve until ``stop`` is set, then shut down within the grace period.

        Args:
            stop: Stop trigger; SIGINT/SIGTERM set an internal one when omitted

        Raises:
            ListenError: If the listener cannot be bound
        """
        restore_signals = None
        if stop is None:
            stop = asyncio.Event()
            restore_signals = _install_signal_handlers(stop)

        try:
            sock = self._socket or self.bind()

            config = uvicorn.Config(
                self.app,
                log_config=None,
                access_log=False,
                lifespan="on",
                timeout_graceful_shutdown=self.grace_period,
            )
            self.server = _Server(config)
            serve_task = asyncio.create_task(self.server.serve(sockets=[sock]), name="http-server")
            self.state = LifecycleState.RUNNING
            log.info("server.running", addr=self.addr)

            stop_task = asyncio.create_task(stop.wait(), name="stop-wait")
            done, _ = await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            stop_task.cancel()

            self.state = LifecycleState.SHUTTING_DOWN
            if serve_task in done:
                log.warning("server.exited_early")
            else:
                log.info("server.shutting_down", grace_period_seconds=self.grace_period)
                self.server.should_exit = True

            try:
                await serve_task
            except Exception as exc:
                log.warning("shutdown.error", error=str(exc), error_type=exc.__class__.__name__)
        finally:
            if restore_signals is not None:
                restore_signals()
            if self._socket is not None:
                self._socket.close()

        self.state = LifecycleState.STOPPED
        log.info("server.stopped")


def _listen(host: str, port: int) -> socket.socket:
    """Listening socket for host; an empty host covers IPv4 and IPv6 when possible."""
    if host:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        return socket.create_server((host, port), family=family)

    if socket.has_dualstack_ipv6():
        try:
            return socket.create_server(("", port), family=socket.AF_INET6, dualstack_ipv6=True)
        except OSError as exc:
            log.warning("listener.dualstack_unavailable", port=port, error=str(exc))
    return socket.create_server(("0.0.0.0", port))


def _install_signal_handlers(stop: asyncio.Event) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to ``stop``; returns a callable undoing it."""
    loop = asyncio.get_running_loop()
    restorers = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            previous = signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))
            restorers.append(functools.partial(signal.signal, sig, previous))
        else:
            restorers.append(functools.partial(loop.remove_signal_handler, sig))

    def restore():
        for undo in restorers:
            undo()

    return restore
