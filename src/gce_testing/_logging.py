"""Centralized logging for gce-testing.

Library logging conventions:
- Attach NullHandler to library root logger
- Never add other handlers implicitly -- that's the application's job
- Support GCE_TESTING_LOG_LEVEL env var for level control
- Provide configure_logging() for entry points

Console output format:
    WARNING [2026-02-25 10:02:54] gce_testing.lifecycle - message

Per-test log files:
    capture_test_log() attaches a FileHandler that only accepts records emitted from
    the asyncio task (context) that opened it, so concurrently running tests
    each get their own main_log.txt even though they share module loggers.
"""

import contextlib
import contextvars
import logging
import logging.handlers
import os
import queue
import threading
from collections.abc import Iterator
from pathlib import Path

import click

LIBRARY_LOGGER_NAME: str = "gce_testing"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = os.environ.get("GCE_TESTING_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096

MAIN_LOG_FILENAME = "main_log.txt"

_current_test: contextvars.ContextVar[str | None] = contextvars.ContextVar("gce_testing_current_test", default=None)

# Library level saved by the first open capture_test_log(), restored by the last.
_capture_lock = threading.Lock()
_open_captures = 0
_level_before_capture = logging.NOTSET


class _ClickHandler(logging.Handler):
    """Target handler: writes to stderr via click.echo with dim styling.

    Runs on the QueueListener's daemon thread, never on the caller's
    thread/coroutine.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, dim=True), err=True)
        except BlockingIOError:
            pass  # Stderr buffer full -- drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller.

    When the bounded queue is full, records are dropped.
    """

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Skip serialization -- same-process queue."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


class _CurrentTestFilter(logging.Filter):
    """Accept only records emitted while `test_name` is the active test."""

    def __init__(self, test_name: str) -> None:
        super().__init__()
        self.test_name = test_name

    def filter(self, record: logging.LogRecord) -> bool:
        return _current_test.get() == self.test_name


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All gce_testing modules should use this instead of logging.getLogger()
    directly for consistent logger hierarchy.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for application entry points.

    Adds a _NonBlockingHandler if none exists (idempotent), then sets the
    log level.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)


def sanitize_test_name(name: str) -> str:
    """Make a pytest node name safe to use as a directory name."""
    return name.replace("/", "_").replace("::", "_").replace("[", "_").replace("]", "")


def log_location(
    log_root_dir: Path,
    test_name: str,
    *,
    artifacts_subdir: str | None = None,
    upload_url_root: str | None = None,
) -> str:
    """Where a reader can find the logs of `test_name`.

    On CI (artifacts_subdir set) logs are uploaded and browsable from the
    cloud console; locally they stay under log_root_dir.
    """
    if not artifacts_subdir:
        return str(log_root_dir / test_name)
    return f"{upload_url_root}{artifacts_subdir}/logs/{test_name}"


def _raise_level_for_capture(lib_logger: logging.Logger) -> None:
    global _open_captures, _level_before_capture
    with _capture_lock:
        if _open_captures == 0:
            _level_before_capture = lib_logger.level
            if lib_logger.level == logging.NOTSET:
                lib_logger.setLevel(logging.DEBUG)
        _open_captures += 1


def _restore_level_after_capture(lib_logger: logging.Logger) -> None:
    global _open_captures
    with _capture_lock:
        _open_captures -= 1
        if _open_captures == 0:
            lib_logger.setLevel(_level_before_capture)


@contextlib.contextmanager
def capture_test_log(log_root_dir: Path, test_name: str) -> Iterator[logging.Logger]:
    """Capture library logs from the current task into a per-test file.

    Creates `<log_root_dir>/<test_name>/main_log.txt`. Records emitted by
    gce_testing loggers inside this context (including child asyncio tasks,
    which inherit the context) land in that file. The file handler records
    at DEBUG. An unset library level is raised to DEBUG while any capture is
    open and restored when the last one closes.

    Yields:
        Logger named after the test, for the test body's own messages
    """
    name = sanitize_test_name(test_name)
    directory = log_root_dir / name
    directory.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(directory / MAIN_LOG_FILENAME, encoding="utf-8")
    handler.setFormatter(logging.Formatter(fmt=_FMT, datefmt=_DATEFMT))
    handler.addFilter(_CurrentTestFilter(name))

    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    _raise_level_for_capture(lib_logger)
    lib_logger.addHandler(handler)
    token = _current_test.set(name)
    try:
        test_logger = get_logger(f"{LIBRARY_LOGGER_NAME}.tests.{name}")
        test_logger.info("Starting test %s", name)
        yield test_logger
    finally:
        _current_test.reset(token)
        lib_logger.removeHandler(handler)
        handler.close()
        _restore_level_after_capture(lib_logger)
