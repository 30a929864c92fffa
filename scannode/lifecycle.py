"""Service lifecycle: main context, signal handling and ordered start/stop."""

from __future__ import annotations

import json
import logging
import signal
import threading
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import CancelledError
from typing import Callable, Iterable, Sequence

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_SIGNAL = signal.SIGTERM
EXIT_CODE_TRIGGERED = 77

_SERVICE_START_TIMEOUT = 10 * 60.0
_POLL_INTERVAL = 0.05

_HANDLED_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGHUP", "SIGINT", "SIGTERM", "SIGQUIT")
    if hasattr(signal, name)
)

_LOG_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


class ExitTriggered(Exception):
    """Raised when an exit was triggered from within the process."""

    def __init__(self, message: str = "exit was triggered") -> None:
        super().__init__(message)


class Service(ABC):
    """A long-running component that can be started and stopped."""

    @abstractmethod
    def start(self) -> None:
        """Start the service; raise on failure."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the service."""

    @abstractmethod
    def name(self) -> str:
        """Return the service name."""


_graceful_shutdown = False
_exit_triggered = False
_current_context: MainContext | None = None


class MainContext:
    """Cancellable process-wide context carrying a unique execution id."""

    def __init__(self, exec_id: str | None = None) -> None:
        self.exec_id = exec_id if exec_id is not None else str(uuid.uuid1())
        self._done = threading.Event()
        self._lock = threading.RLock()
        self._signal_received = False
        self._previous_handlers: dict[int, object] = {}

    def cancel(self) -> None:
        """Mark the context as done."""
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the context is done; return whether it is done."""
        return self._done.wait(timeout)

    def interrupt(self, signum: int) -> None:
        """Handle a (real or simulated) signal; only the first one counts."""
        global _graceful_shutdown
        with self._lock:
            if self._signal_received:
                return
            self._signal_received = True
        try:
            sig_name = signal.Signals(signum).name
        except ValueError:
            sig_name = str(signum)
        logger.info("received signal: %s", sig_name)
        _graceful_shutdown = signum == GRACEFUL_SHUTDOWN_SIGNAL
        self.cancel()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in _HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, lambda num, _frame: self.interrupt(num))

    def _restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()


def init_main_context() -> MainContext:
    """Create the main context and route termination signals to it."""
    global _current_context, _graceful_shutdown, _exit_triggered
    _graceful_shutdown = False
    _exit_triggered = False
    ctx = MainContext()
    ctx._install_signal_handlers()
    _current_context = ctx
    return ctx


def is_graceful_shutdown() -> bool:
    """Tell whether the shutdown was requested with the graceful signal."""
    return _graceful_shutdown


def interrupt_main_context() -> None:
    """Simulate an interrupt signal on the current main context."""
    ctx = _current_context
    if ctx is not None:
        ctx.interrupt(signal.SIGINT)


def trigger_exit(delay: float) -> None:
    """Wait for the delay (seconds), then request an internal exit."""
    global _exit_triggered
    if delay > 0:
        logger.info("waiting %ss before triggering exit", delay)
        time.sleep(delay)
        logger.info("done waiting %ss before triggering exit", delay)
    _exit_triggered = True
    interrupt_main_context()


def _run_start(ctx: MainContext, service: Service, started: threading.Event) -> None:
    logger.info("starting service %s", service.name())
    try:
        service.start()
    except Exception:
        logger.exception("failed to start service %s", service.name())
        ctx.cancel()
        return
    started.set()


def start_services(ctx: MainContext, services: Sequence[Service]) -> None:
    """Start services one by one, wait for the context, then stop them all.

    Raises CancelledError if the context ends while services are starting
    and ExitTriggered if an internal exit was requested.
    """
    for service in services:
        started = threading.Event()
        threading.Thread(
            target=_run_start, args=(ctx, service, started), daemon=True
        ).start()
        deadline = time.monotonic() + _SERVICE_START_TIMEOUT
        while not started.wait(_POLL_INTERVAL):
            if ctx.wait(0):
                raise CancelledError("context canceled")
            if time.monotonic() >= deadline:
                logger.error("took too long to start service %s", service.name())
                ctx.cancel()
                break

    ctx.wait()
    logger.info("context is done")

    for service in services:
        logger.info("stopping service %s", service.name())
        try:
            service.stop()
        except Exception as exc:
            logger.info("stopped service %s with error: %s", service.name(), exc)
        else:
            logger.info("stopped service %s", service.name())

    if _exit_triggered:
        raise ExitTriggered()


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
            "time": self.formatTime(record),
            "logger": record.name,
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def _parse_log_level(level: str) -> int:
    try:
        return _LOG_LEVELS[level.strip().lower()]
    except KeyError:
        raise ValueError(f"not a valid log level: {level!r}") from None


def _configure_logging(level: int) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_JsonFormatter())
        root.addHandler(handler)


def container_main(
    name: str,
    get_services: Callable[[MainContext], Iterable[Service]],
    log_level: str = "info",
) -> None:
    """Run a container's services until shutdown.

    Exits the process with EXIT_CODE_TRIGGERED if an exit was triggered.
    """
    try:
        level = _parse_log_level(log_level)
    except ValueError as exc:
        logger.error("container %s: could not initialize log level: %s", name, exc)
        return
    _configure_logging(level)
    logger.info("container %s: starting", name)

    ctx = init_main_context()
    try:
        try:
            services = list(get_services(ctx))
        except Exception:
            logger.exception("container %s: could not initialize services", name)
            return
        try:
            start_services(ctx, services)
        except ExitTriggered:
            logger.info("container %s: exiting due to internal trigger", name)
            raise SystemExit(EXIT_CODE_TRIGGERED) from None
        except Exception as exc:
            logger.error("container %s: failed to start services: %s", name, exc)
    finally:
        ctx.cancel()
        ctx._restore_signal_handlers()
        logger.info("container %s: exiting", name)