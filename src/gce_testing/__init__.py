"""gce-testing: integration-test VMs on Google Compute Engine.

Provisions short-lived GCE VMs through the gcloud CLI, runs commands on
Linux and Windows guests over ssh, and polls Cloud Monitoring, Cloud Logging
and Cloud Trace until the data an agent wrote on the VM becomes visible.

Quick Start:
    ```python
    import datetime

    from gce_testing import InstanceManager, ServiceRegistry, VMOptions, waiters

    async with ServiceRegistry() as registry:
        manager = InstanceManager(registry)
        async with manager.setup_vm(VMOptions(image_spec="debian-cloud:debian-12")) as vm:
            await manager.executor.run_remotely(vm, "sudo systemctl restart google-cloud-ops-agent")
            series = await waiters.wait_for_metric(
                registry, vm, "agent.googleapis.com/cpu/utilization", datetime.timedelta(hours=1)
            )
    ```

Configuration comes from environment variables (PROJECT, ZONES,
TRANSFERS_BUCKET, ...), see gce_testing.settings.Settings.

Requirements:
    - gcloud CLI and ssh/ssh-keygen on PATH
    - Application default credentials for the Google API clients
    - Python 3.12+
"""

from gce_testing.exceptions import (
    CombinedError,
    CommandError,
    CommandTimeoutError,
    ConfigurationError,
    ErrInvalidIteratorLength,
    ExhaustedRetriesError,
    HarnessError,
    InconclusiveQueryError,
    InstanceParseError,
    PermanentBackendError,
    PermanentError,
    RemoteCommandError,
    RetriableBackendError,
    TransientError,
    UnexpectedDataError,
)
from gce_testing.gcloud import setup_gcloud_config_dir, with_gcloud_config_dir
from gce_testing.guest_os import GuestPlatform
from gce_testing.lifecycle import InstanceManager
from gce_testing.models import VM, CommandOutput, GuestOS, ManagedInstanceGroupVM, VMOptions
from gce_testing.registry import ServiceRegistry
from gce_testing.remote import RemoteExecutor
from gce_testing.settings import Settings
from gce_testing.zones import ZoneSelector

__all__ = [
    "VM",
    "CombinedError",
    "CommandError",
    "CommandOutput",
    "CommandTimeoutError",
    "ConfigurationError",
    "ErrInvalidIteratorLength",
    "ExhaustedRetriesError",
    "GuestOS",
    "GuestPlatform",
    "HarnessError",
    "InconclusiveQueryError",
    "InstanceManager",
    "InstanceParseError",
    "ManagedInstanceGroupVM",
    "PermanentBackendError",
    "PermanentError",
    "RemoteCommandError",
    "RemoteExecutor",
    "RetriableBackendError",
    "ServiceRegistry",
    "Settings",
    "TransientError",
    "UnexpectedDataError",
    "VMOptions",
    "ZoneSelector",
    "setup_gcloud_config_dir",
    "with_gcloud_config_dir",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("gce-testing")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
