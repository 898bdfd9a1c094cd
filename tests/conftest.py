"""Shared pytest fixtures for gce-testing tests.

Nothing here talks to Google Cloud: gcloud and ssh are replaced by scripted
fakes keyed on the command text, and the API clients by in-memory fakes.
Backoff constants are zeroed so retry loops run instantly.
"""

import json
from collections.abc import AsyncGenerator, Sequence
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from gce_testing import constants
from gce_testing.exceptions import CommandError, RemoteCommandError
from gce_testing.models import VM, CommandOutput
from gce_testing.registry import SSH_KEY_FILENAME, ServiceRegistry
from gce_testing.settings import Settings
from gce_testing.zones import ZoneSelector

TEST_PROJECT = "test-project"
TEST_ZONE = "us-central1-a"
TEST_PREFIX = "test-20260101-abcde"
TEST_PUBLIC_KEY = "ssh-rsa AAAAB3NzaC1yc2E test_user"

# ============================================================================
# Command Output Helpers
# ============================================================================


def instance_json(
    instance_id: int = 1234567890,
    nat_ip: str = "203.0.113.10",
    internal_ip: str = "10.128.0.5",
) -> str:
    """gcloud --format=json output listing a single instance."""
    interface: dict[str, Any] = {"networkIP": internal_ip, "accessConfigs": []}
    if nat_ip:
        interface["accessConfigs"].append({"name": "external-nat", "natIP": nat_ip})
    return json.dumps([{"id": str(instance_id), "name": "vm", "networkInterfaces": [interface]}])


def gcloud_error(message: str) -> CommandError:
    return CommandError(f"Command failed: gcloud\n{message}", CommandOutput(stderr=message), exit_code=1)


def remote_error(message: str, stdout: str = "") -> RemoteCommandError:
    return RemoteCommandError(f"Command failed: ssh\n{message}", CommandOutput(stdout=stdout, stderr=message), 1)


# ============================================================================
# Scripted gcloud / ssh
# ============================================================================


class _Script:
    """Responses keyed on a matcher; the last response for a key repeats."""

    def __init__(self) -> None:
        self._rules: list[tuple[Any, list[Any]]] = []

    def on(self, key: Any, *responses: Any) -> None:
        self._rules.append((key, list(responses)))

    def respond(self, matches: Any) -> Any:
        for key, responses in self._rules:
            if matches(key):
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, BaseException):
                    raise response
                if callable(response):
                    return response()
                return response
        return None


class FakeGcloud(_Script):
    """Stands in for run_gcloud(); rules match on a prefix of the arguments."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[list[str]] = []

    async def __call__(
        self, settings: Settings, args: Sequence[str], *, stdin: str | None = None, timeout: float | None = None
    ) -> CommandOutput:
        argv = list(args)
        self.calls.append(argv)
        result = self.respond(lambda prefix: argv[: len(prefix)] == list(prefix))
        return result if result is not None else CommandOutput()

    def verbs(self) -> list[str]:
        """Calls rendered up to the resource name, e.g. "compute instances delete"."""
        return [" ".join(arg for arg in call if not arg.startswith("--")) for call in self.calls]


class FakeRemote(_Script):
    """Stands in for RemoteExecutor.run_remotely(); rules match on a substring."""

    def __init__(self) -> None:
        super().__init__()
        self.commands: list[str] = []
        self.stdins: list[str | None] = []
        self.on("systemctl is-system-running", CommandOutput(stdout="running\n"))
        self.on("/etc/os-release", CommandOutput(stdout="debian"))

    def on(self, key: Any, *responses: Any) -> None:
        # Later rules take precedence over the defaults.
        self._rules.insert(0, (key, list(responses)))

    async def run_remotely(
        self, vm: VM, command: str, *, stdin: str | None = None, timeout: float | None = None
    ) -> CommandOutput:
        self.commands.append(command)
        self.stdins.append(stdin)
        result = self.respond(lambda fragment: fragment in command)
        return result if result is not None else CommandOutput()


# ============================================================================
# Fake Google API Clients
# ============================================================================


def series(points: int = 1) -> SimpleNamespace:
    """A time series with `points` data points."""
    return SimpleNamespace(points=[SimpleNamespace(value=i) for i in range(points)])


class FakeMetricClient(_Script):
    def __init__(self) -> None:
        super().__init__()
        self.requests: list[dict[str, Any]] = []

    def list_time_series(self, request: dict[str, Any]) -> list[Any]:
        self.requests.append(request)
        return list(self.respond(lambda key: True) or [])


class FakeTraceClient(_Script):
    def __init__(self) -> None:
        super().__init__()
        self.requests: list[Any] = []

    def list_traces(self, request: Any) -> list[Any]:
        self.requests.append(request)
        return list(self.respond(lambda key: True) or [])


class FakeLogClient(_Script):
    def __init__(self, project: str) -> None:
        super().__init__()
        self.project = project
        self.filters: list[str] = []

    def list_entries(self, *, filter_: str, resource_names: list[str]) -> list[Any]:
        self.filters.append(filter_)
        return list(self.respond(lambda key: True) or [])


class FakeBlob:
    def __init__(self, bucket: "FakeBucket", name: str) -> None:
        self.bucket = bucket
        self.name = name

    def upload_from_string(self, content: str | bytes) -> None:
        if self.bucket.upload_error is not None:
            raise self.bucket.upload_error
        self.bucket.objects[self.name] = content
        self.bucket.uploads.append((self.name, content))

    def delete(self) -> None:
        self.bucket.deleted.append(self.name)
        if self.bucket.delete_error is not None:
            raise self.bucket.delete_error
        self.bucket.objects.pop(self.name, None)


class FakeBucket:
    def __init__(self, name: str) -> None:
        self.name = name
        self.objects: dict[str, str | bytes] = {}
        self.deleted: list[str] = []
        self.uploads: list[tuple[str, str | bytes]] = []
        self.upload_error: Exception | None = None
        self.delete_error: Exception | None = None

    def blob(self, name: str) -> FakeBlob:
        return FakeBlob(self, name)


class FakeStorageClient:
    def __init__(self) -> None:
        self.buckets: dict[str, FakeBucket] = {}

    def bucket(self, name: str) -> FakeBucket:
        return self.buckets.setdefault(name, FakeBucket(name))


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def fast_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    """Zero every pause so retry loops do not sleep."""
    for name in (
        "VM_CREATE_BACKOFF_SECONDS",
        "VM_INIT_BACKOFF_SECONDS",
        "SLES_STARTUP_DELAY_SECONDS",
        "SLES_STARTUP_SUDO_DELAY_SECONDS",
        "SLES_REGISTER_BACKOFF_SECONDS",
        "SLES_ZYPPER_BACKOFF_SECONDS",
        "START_BACKOFF_SECONDS",
        "DELETE_BACKOFF_SECONDS",
        "QUERY_BACKOFF_SECONDS",
        "LOG_QUERY_BACKOFF_SECONDS",
    ):
        monkeypatch.setattr(constants, name, 0)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        project=TEST_PROJECT,
        zones=TEST_ZONE,
        network_name="default",
        use_internal_ip=False,
        service_email=None,
        instance_size=None,
        transfers_bucket="transfers",
        test_undeclared_outputs_dir=tmp_path / "logs",
        kokoro_build_id=None,
        kokoro_build_artifacts_subdir=None,
        image_specs="",
    )


@pytest.fixture
async def registry(settings: Settings, tmp_path: Path) -> AsyncGenerator[ServiceRegistry, None]:
    """Registry with fake clients and a pre-made (dummy) key pair."""
    keys_dir = tmp_path / "keys"
    keys_dir.mkdir()
    (keys_dir / SSH_KEY_FILENAME).write_text("private")
    (keys_dir / (SSH_KEY_FILENAME + ".pub")).write_text(TEST_PUBLIC_KEY + "\n")

    reg = ServiceRegistry(
        settings,
        zone_selector=ZoneSelector([(TEST_ZONE, 1)]),
        storage_client_factory=FakeStorageClient,
        metric_client_factory=FakeMetricClient,
        trace_client_factory=FakeTraceClient,
        log_client_factory=FakeLogClient,
        sandbox_prefix=TEST_PREFIX,
    )
    reg._keys_dir = keys_dir
    yield reg


@pytest.fixture
def fake_gcloud(monkeypatch: pytest.MonkeyPatch) -> FakeGcloud:
    fake = FakeGcloud()
    monkeypatch.setattr("gce_testing.lifecycle.run_gcloud", fake)
    return fake


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def vm() -> VM:
    return VM(
        name=f"{TEST_PREFIX}-vm",
        project=TEST_PROJECT,
        network="default",
        image_spec="debian-cloud:debian-12",
        zone=TEST_ZONE,
        machine_type="e2-standard-4",
        id=1234567890,
        ip_address="203.0.113.10",
    )


@pytest.fixture
def windows_vm(vm: VM) -> VM:
    vm.image_spec = "windows-cloud:windows-2022"
    return vm
