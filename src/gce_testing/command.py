"""Local command runner.

Every external tool the harness drives (gcloud, ssh, ssh-keygen, cp) goes
through run_command(), so timeouts, cancellation and output capture behave
the same everywhere.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from typing import TYPE_CHECKING

from gce_testing._logging import get_logger
from gce_testing.exceptions import CommandError, CommandTimeoutError, ConfigurationError
from gce_testing.models import CommandOutput
from gce_testing.process import ProcessWrapper, cleanup_process

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = get_logger(__name__)

_READ_CHUNK_SIZE = 64 * 1024

_READER_GRACE_SECONDS = 5.0
"""How long to keep draining pipes after the process was stopped.
Grandchildren (ssh ControlMaster, gcloud helpers) can hold them open."""


class _OutputBuffers:
    """stdout, stderr and both streams interleaved in arrival order."""

    def __init__(self) -> None:
        self.stdout = bytearray()
        self.stderr = bytearray()
        self.interleaved = bytearray()

    def to_output(self) -> CommandOutput:
        return CommandOutput(
            stdout=self.stdout.decode(errors="replace"),
            stderr=self.stderr.decode(errors="replace"),
        )

    def interleaved_text(self) -> str:
        return self.interleaved.decode(errors="replace")


async def _pump(stream: asyncio.StreamReader | None, own: bytearray, interleaved: bytearray) -> None:
    """Read stream until EOF into its own buffer and the shared one."""
    if stream is None:
        return
    while chunk := await stream.read(_READ_CHUNK_SIZE):
        own += chunk
        interleaved += chunk


async def _feed_stdin(proc: asyncio.subprocess.Process, data: str | None) -> None:
    if proc.stdin is None:
        return
    try:
        if data:
            proc.stdin.write(data.encode())
            await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        pass  # Child exited without reading all of stdin
    finally:
        proc.stdin.close()


async def _finish_readers(readers: list[asyncio.Task[None]]) -> None:
    _, pending = await asyncio.wait(readers, timeout=_READER_GRACE_SECONDS)
    for task in pending:
        task.cancel()
    for task in pending:
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def run_command(
    args: Sequence[str],
    *,
    stdin: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CommandOutput:
    """Run a command and capture its output.

    Args:
        args: argv; args[0] is resolved on PATH
        stdin: Text fed to the process, then stdin is closed
        env: Variables layered over the inherited environment
        timeout: Seconds before the process is terminated (None = no limit)

    Returns:
        Captured stdout and stderr

    Raises:
        ConfigurationError: args is empty
        CommandTimeoutError: Deadline expired; partial output attached
        CommandError: Non-zero exit, or the executable could not be started
        asyncio.CancelledError: Caller was cancelled; the process is stopped first
    """
    if not args:
        raise ConfigurationError(f"run_command() needs a nonempty argument list, got {list(args)!r}")
    argv = list(args)
    name = os.path.basename(argv[0])

    merged_env = {**os.environ, **env} if env else None
    buffers = _OutputBuffers()

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=merged_env,
        )
    except OSError as e:
        raise CommandError(f"Command failed: {argv}\n{e}", buffers.to_output(), context={"args": argv}) from e

    wrapper = ProcessWrapper(proc)
    readers = [
        asyncio.create_task(_pump(proc.stdout, buffers.stdout, buffers.interleaved)),
        asyncio.create_task(_pump(proc.stderr, buffers.stderr, buffers.interleaved)),
    ]

    try:
        async with asyncio.timeout(timeout):
            await _feed_stdin(proc, stdin)
            # Not gather: readers must keep draining while cleanup runs.
            await asyncio.wait(readers)
            returncode = await proc.wait()
    except TimeoutError:
        await cleanup_process(wrapper, name)
        await _finish_readers(readers)
        interleaved = buffers.interleaved_text()
        logger.debug("Command timed out", extra={"args": argv, "timeout": timeout, "output": interleaved})
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s: {argv}\nstdout+stderr: {interleaved}",
            buffers.to_output(),
            context={"args": argv, "timeout": timeout},
        ) from None
    except asyncio.CancelledError:
        await cleanup_process(wrapper, name)
        await _finish_readers(readers)
        raise

    interleaved = buffers.interleaved_text()
    logger.debug(f"exit code: {returncode}", extra={"args": argv, "exit_code": returncode})
    logger.debug(f"stdout+stderr: {interleaved}")

    output = buffers.to_output()
    if returncode != 0:
        raise CommandError(
            f"Command failed: {argv}\nexit status {returncode}\nstdout+stderr: {interleaved}",
            output,
            exit_code=returncode,
            context={"args": argv, "exit_code": returncode},
        )
    return output
