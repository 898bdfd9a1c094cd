"""Tests for the local command runner.

Uses real subprocesses (sh, cat, sleep); no mocks.
"""

import asyncio
import time

import psutil
import pytest

from gce_testing.command import run_command
from gce_testing.exceptions import CommandError, CommandTimeoutError, ConfigurationError

# ============================================================================
# Output Capture
# ============================================================================


class TestRunCommandOutput:
    async def test_captures_stdout_and_stderr_separately(self) -> None:
        output = await run_command(["sh", "-c", "echo out; echo err >&2"])
        assert output.stdout == "out\n"
        assert output.stderr == "err\n"

    async def test_stdin_is_fed_and_closed(self) -> None:
        output = await run_command(["cat"], stdin="hello\nworld\n")
        assert output.stdout == "hello\nworld\n"

    async def test_no_stdin_reads_eof(self) -> None:
        """Without stdin the child must not hang waiting for input."""
        output = await run_command(["cat"], timeout=5)
        assert output.stdout == ""

    async def test_env_is_layered_over_inherited(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GCE_TESTING_INHERITED", "kept")
        output = await run_command(
            ["sh", "-c", 'echo "$GCE_TESTING_INHERITED $GCE_TESTING_ADDED"'],
            env={"GCE_TESTING_ADDED": "added"},
        )
        assert output.stdout == "kept added\n"

    async def test_large_output_on_both_pipes(self) -> None:
        """Both pipes are drained concurrently, so a full stderr pipe cannot deadlock."""
        script = "head -c 300000 /dev/zero | tr '\\0' a; head -c 300000 /dev/zero | tr '\\0' b >&2"
        output = await run_command(["sh", "-c", script], timeout=30)
        assert len(output.stdout) == 300000
        assert len(output.stderr) == 300000


# ============================================================================
# Failures
# ============================================================================


class TestRunCommandFailures:
    async def test_empty_args_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            await run_command([])

    async def test_nonzero_exit_raises_with_output(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_command(["sh", "-c", "echo partial; echo broken >&2; exit 3"])

        err = exc_info.value
        assert err.exit_code == 3
        assert err.output.stdout == "partial\n"
        assert err.output.stderr == "broken\n"
        assert "exit status 3" in str(err)
        assert "broken" in str(err)

    async def test_interleaved_output_keeps_arrival_order(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_command(["sh", "-c", "echo first; sleep 0.2; echo second >&2; sleep 0.2; echo third; exit 1"])

        interleaved = str(exc_info.value).split("stdout+stderr: ", 1)[1]
        assert interleaved == "first\nsecond\nthird\n"

    async def test_missing_executable(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_command(["gce-testing-no-such-binary"])
        assert exc_info.value.exit_code is None

    async def test_error_is_not_a_timeout(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_command(["false"])
        assert not isinstance(exc_info.value, CommandTimeoutError)


# ============================================================================
# Timeouts and Cancellation
# ============================================================================


class TestRunCommandTermination:
    async def test_timeout_kills_process(self) -> None:
        start = time.monotonic()
        with pytest.raises(CommandTimeoutError) as exc_info:
            await run_command(["sh", "-c", "echo started; exec sleep 30"], timeout=0.5)

        assert time.monotonic() - start < 10
        assert exc_info.value.output.stdout == "started\n"

    @pytest.mark.slow
    async def test_timeout_escalates_to_sigkill(self) -> None:
        """A child ignoring SIGTERM is killed after the grace period."""
        start = time.monotonic()
        with pytest.raises(CommandTimeoutError):
            await run_command(["sh", "-c", "trap '' TERM; while true; do sleep 0.1; done"], timeout=0.5)
        assert time.monotonic() - start < 15

    async def test_cancellation_stops_process(self) -> None:
        marker = "37.123"
        task = asyncio.create_task(run_command(["sleep", marker]))
        await asyncio.sleep(0.5)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        alive = [p for p in psutil.process_iter(["cmdline"]) if marker in " ".join(p.info["cmdline"] or [])]
        assert alive == []
