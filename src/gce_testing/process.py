"""PID-reuse safe subprocess handling.

Wraps asyncio subprocesses with psutil so that terminate/kill never hit a
recycled PID, and provides the SIGTERM -> SIGKILL escalation used when a
command overruns its deadline or its caller is cancelled.
"""

import asyncio
import contextlib

import psutil

from gce_testing._logging import get_logger

logger = get_logger(__name__)


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID monitoring.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Runs the blocking psutil call in a worker thread so a hung kernel
        call never stalls the event loop.
        """
        if not self.psutil_proc:
            return self.async_proc.returncode is None
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        return await self.async_proc.wait()

    async def terminate(self) -> None:
        """SIGTERM."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.terminate()

    async def kill(self) -> None:
        """SIGKILL."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.kill()


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Force cleanup of subprocess (SIGTERM -> SIGKILL).

    Never raises: failures are logged. Output pipes must be drained by the
    caller's readers, this only waits for exit.

    Args:
        proc: ProcessWrapper to stop (None safe - returns immediately)
        name: Process name for logging (usually argv[0])
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process exited, False if it could not be reaped
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"pid": proc.pid})
        await proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=term_timeout)
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"pid": proc.pid, "term_timeout": term_timeout},
            )

        await proc.kill()
        try:
            await asyncio.wait_for(proc.wait(), timeout=kill_timeout)
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"pid": proc.pid, "kill_timeout": kill_timeout},
            )
            return False

    except ProcessLookupError:
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"pid": proc.pid, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False
