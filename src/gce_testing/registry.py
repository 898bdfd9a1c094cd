"""Shared services for a test run.

ServiceRegistry owns everything that is shared between concurrently running
tests: settings, the zone selector, the ssh key pair, the VM name prefix,
the log directory and the Google API clients. It is constructed once (per
test session) and passed explicitly to the instance manager, the remote
executor and the backend waiters.

Google clients are created lazily on first use, so a test that never
queries traces never needs trace credentials. Client factories can be
replaced for unit tests.

Example:
    ```python
    async with ServiceRegistry() as registry:
        manager = InstanceManager(registry)
        async with manager.setup_vm(VMOptions(image_spec="debian-cloud:debian-12")) as vm:
            ...
    ```
"""

from __future__ import annotations

import contextlib
import datetime
import logging
import tempfile
import threading
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from google.cloud import logging as cloud_logging
from google.cloud import monitoring_v3, storage, trace_v1

from gce_testing import constants
from gce_testing._logging import capture_test_log, get_logger, log_location, sanitize_test_name
from gce_testing.command import run_command
from gce_testing.exceptions import ConfigurationError
from gce_testing.settings import Settings
from gce_testing.zones import ZoneSelector

logger = get_logger(__name__)

SSH_KEY_FILENAME = "gce_testing_key"


def make_sandbox_prefix(settings: Settings, today: datetime.date | None = None) -> str:
    """Prefix for every VM name created in this run.

    Today's date makes leaked VMs easy to spot; the random suffix separates
    concurrent runs. VM names are limited to 63 characters, so the prefix
    stays short. The restricted external-build account may only touch VMs
    named github-*.
    """
    today = today or datetime.date.today()
    prefix = f"test-{today:%Y%m%d}-{uuid.uuid4().hex[:5]}"
    if settings.is_external_build:
        prefix = "github-" + prefix
    return prefix


class LogClientFactory:
    """Per-project Cloud Logging clients, created on first use.

    Safe to call from several threads (the waiters run client calls in
    worker threads).
    """

    def __init__(self, factory: Callable[[str], Any] | None = None) -> None:
        self._factory = factory or (lambda project: cloud_logging.Client(project=project))
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, project: str) -> Any:
        with self._lock:
            client = self._clients.get(project)
            if client is None:
                client = self._factory(project)
                self._clients[project] = client
            return client


class ServiceRegistry:
    """Explicitly passed container of shared clients and run-wide state.

    Attributes:
        settings: Environment configuration
        sandbox_prefix: Prefix for generated VM names
        log_root_dir: Where per-test logs go
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        zone_selector: ZoneSelector | None = None,
        storage_client_factory: Callable[[], Any] | None = None,
        metric_client_factory: Callable[[], Any] | None = None,
        trace_client_factory: Callable[[], Any] | None = None,
        log_client_factory: Callable[[str], Any] | None = None,
        sandbox_prefix: str | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.sandbox_prefix = sandbox_prefix or make_sandbox_prefix(self.settings)
        self._zone_selector = zone_selector
        self._storage_client_factory = storage_client_factory or storage.Client
        self._metric_client_factory = metric_client_factory or monitoring_v3.MetricServiceClient
        self._trace_client_factory = trace_client_factory or trace_v1.TraceServiceClient
        self.log_clients = LogClientFactory(log_client_factory)

        self._lock = threading.Lock()
        self._storage_client: Any = None
        self._metric_client: Any = None
        self._trace_client: Any = None

        self._keys_dir: Path | None = None
        self._log_root_dir: Path | None = None

    async def __aenter__(self) -> ServiceRegistry:
        await self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Run-wide state
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Generate a fresh ssh key pair for this run."""
        if self._keys_dir is not None:
            return
        keys_dir = Path(tempfile.mkdtemp(prefix="ssh_keys"))
        private_key = keys_dir / SSH_KEY_FILENAME
        await run_command(
            ["ssh-keygen", "-t", "rsa", "-f", str(private_key), "-C", constants.SSH_USER_NAME, "-N", ""],
        )
        self._keys_dir = keys_dir
        logger.info(f"Detailed logs are in {self.log_root_dir}")

    async def close(self) -> None:
        """Delete the ssh key pair."""
        keys_dir, self._keys_dir = self._keys_dir, None
        if keys_dir is None:
            return
        for name in (SSH_KEY_FILENAME, SSH_KEY_FILENAME + ".pub"):
            path = keys_dir / name
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.remove(path)
        await aiofiles.os.rmdir(keys_dir)

    @property
    def private_key_file(self) -> Path:
        if self._keys_dir is None:
            raise ConfigurationError("ssh keys are not set up; use `async with ServiceRegistry()` or call start()")
        return self._keys_dir / SSH_KEY_FILENAME

    @property
    def public_key_file(self) -> Path:
        return self.private_key_file.with_name(SSH_KEY_FILENAME + ".pub")

    async def read_public_key(self) -> str:
        async with aiofiles.open(self.public_key_file) as f:
            return (await f.read()).strip()

    @property
    def log_root_dir(self) -> Path:
        """TEST_UNDECLARED_OUTPUTS_DIR, or a fresh temporary directory."""
        with self._lock:
            if self._log_root_dir is None:
                configured = self.settings.test_undeclared_outputs_dir
                self._log_root_dir = configured if configured else Path(tempfile.mkdtemp())
            return self._log_root_dir

    @property
    def zone_selector(self) -> ZoneSelector:
        """Selector built from ZONES on first use."""
        with self._lock:
            if self._zone_selector is None:
                self._zone_selector = ZoneSelector.from_spec(self.settings.zones)
            return self._zone_selector

    def generate_vm_name(self, max_suffix_length: int | None = None) -> str:
        suffix = str(uuid.uuid4())
        if max_suffix_length is not None:
            suffix = suffix[:max_suffix_length]
        return f"{self.sandbox_prefix}-{suffix}"

    def default_project(self) -> str:
        if not self.settings.project:
            raise ConfigurationError("no project given; set PROJECT or VMOptions.project")
        return self.settings.project

    # -------------------------------------------------------------------------
    # Google API clients
    # -------------------------------------------------------------------------

    @property
    def storage_client(self) -> Any:
        with self._lock:
            if self._storage_client is None:
                self._storage_client = self._storage_client_factory()
            return self._storage_client

    @property
    def metric_client(self) -> Any:
        with self._lock:
            if self._metric_client is None:
                self._metric_client = self._metric_client_factory()
            return self._metric_client

    @property
    def trace_client(self) -> Any:
        with self._lock:
            if self._trace_client is None:
                self._trace_client = self._trace_client_factory()
            return self._trace_client

    def log_client(self, project: str) -> Any:
        return self.log_clients.get(project)

    # -------------------------------------------------------------------------
    # Per-test logs
    # -------------------------------------------------------------------------

    def capture_test_log(self, test_name: str) -> contextlib.AbstractContextManager[logging.Logger]:
        """Per-test main_log.txt under log_root_dir, see _logging.capture_test_log()."""
        return capture_test_log(self.log_root_dir, test_name)

    def log_location(self, test_name: str) -> str:
        """Where to find the logs of `test_name` (console URL on CI)."""
        return log_location(
            self.log_root_dir,
            sanitize_test_name(test_name),
            artifacts_subdir=self.settings.kokoro_build_artifacts_subdir,
            upload_url_root=self.settings.log_upload_url_root,
        )
