"""Tests for library logging and per-test log capture."""

import asyncio
import logging
from pathlib import Path

from gce_testing._logging import (
    LIBRARY_LOGGER_NAME,
    MAIN_LOG_FILENAME,
    _NonBlockingHandler,
    capture_test_log,
    configure_logging,
    get_logger,
    log_location,
    sanitize_test_name,
)

logger = get_logger("gce_testing.lifecycle")


def _read_log(root: Path, name: str) -> str:
    return (root / name / MAIN_LOG_FILENAME).read_text()


class TestSanitize:
    def test_node_id(self) -> None:
        assert sanitize_test_name("tests/test_x.py::test_vm[debian-12]") == "tests_test_x.py_test_vm_debian-12"


class TestLogLocation:
    def test_local(self, tmp_path: Path) -> None:
        assert log_location(tmp_path, "test_a") == str(tmp_path / "test_a")

    def test_ci(self, tmp_path: Path) -> None:
        location = log_location(
            tmp_path, "test_a", artifacts_subdir="prod/ops-agent/123", upload_url_root="https://example.com/logs/"
        )
        assert location == "https://example.com/logs/prod/ops-agent/123/logs/test_a"


class TestCaptureTestLog:
    def test_writes_library_records(self, tmp_path: Path) -> None:
        with capture_test_log(tmp_path, "test_one") as test_logger:
            test_logger.info("from the test body")
            logger.info("from the library")

        content = _read_log(tmp_path, "test_one")
        assert "Starting test test_one" in content
        assert "from the test body" in content
        assert "from the library" in content

    def test_records_after_exit_are_not_written(self, tmp_path: Path) -> None:
        with capture_test_log(tmp_path, "test_one"):
            pass
        logger.warning("after the test")
        assert "after the test" not in _read_log(tmp_path, "test_one")

    async def test_concurrent_tests_get_separate_files(self, tmp_path: Path) -> None:
        async def run(name: str) -> None:
            with capture_test_log(tmp_path, name):
                for i in range(3):
                    logger.info(f"{name} step {i}")
                    await asyncio.sleep(0.01)

        await asyncio.gather(run("test_a"), run("test_b"))

        a = _read_log(tmp_path, "test_a")
        b = _read_log(tmp_path, "test_b")
        assert "test_a step 2" in a
        assert "test_b" not in a
        assert "test_b step 2" in b
        assert "test_a" not in b

    async def test_child_tasks_are_captured(self, tmp_path: Path) -> None:
        async def child() -> None:
            logger.info("from a child task")

        with capture_test_log(tmp_path, "test_parent"):
            await asyncio.create_task(child())

        assert "from a child task" in _read_log(tmp_path, "test_parent")

    def test_library_level_restored_after_exit(self, tmp_path: Path) -> None:
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        old_level = lib_logger.level
        lib_logger.setLevel(logging.NOTSET)
        try:
            with capture_test_log(tmp_path, "test_one"):
                assert lib_logger.level == logging.DEBUG
            assert lib_logger.level == logging.NOTSET

            lib_logger.setLevel(logging.WARNING)
            with capture_test_log(tmp_path, "test_two"):
                assert lib_logger.level == logging.WARNING
            assert lib_logger.level == logging.WARNING
        finally:
            lib_logger.setLevel(old_level)

    def test_overlapping_captures_keep_debug_until_last_exit(self, tmp_path: Path) -> None:
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        old_level = lib_logger.level
        lib_logger.setLevel(logging.NOTSET)
        try:
            first = capture_test_log(tmp_path, "test_a")
            second = capture_test_log(tmp_path, "test_b")
            first.__enter__()
            second.__enter__()
            first.__exit__(None, None, None)
            assert lib_logger.level == logging.DEBUG
            second.__exit__(None, None, None)
            assert lib_logger.level == logging.NOTSET
        finally:
            lib_logger.setLevel(old_level)


class TestConfigureLogging:
    def test_idempotent(self) -> None:
        lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
        before = list(lib_logger.handlers)
        old_level = lib_logger.level
        added: list[logging.Handler] = []
        try:
            configure_logging(level="INFO")
            configure_logging(level="INFO")
            added = [h for h in lib_logger.handlers if h not in before]
            assert len([h for h in lib_logger.handlers if isinstance(h, _NonBlockingHandler)]) == 1
            assert lib_logger.level == logging.INFO

            configure_logging(quiet=True)
            assert lib_logger.level == logging.ERROR
        finally:
            for handler in added:
                lib_logger.removeHandler(handler)
                handler.close()
            lib_logger.setLevel(old_level)
