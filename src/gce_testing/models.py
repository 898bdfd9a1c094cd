"""Data models for gce-testing."""

import json
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from gce_testing.exceptions import InstanceParseError
from gce_testing.guest_os import WINDOWS_OS_ID, GuestPlatform, platform_for_image


class CommandOutput(BaseModel):
    """Captured output of a local or remote command."""

    model_config = ConfigDict(frozen=True)

    stdout: str = ""
    stderr: str = ""


@dataclass(frozen=True)
class GuestOS:
    """Operating system detected on a running guest."""

    id: str = ""
    """ID from /etc/os-release, or "windows"."""

    @property
    def is_windows(self) -> bool:
        return self.id == WINDOWS_OS_ID


class VMOptions(BaseModel):
    """Options for creating a VM.

    Attributes:
        image_spec: `<project>:<family>` or `<project>=<image>`. Required.
        time_to_live: Duration like "3h" or "1d" after which GCE deletes the VM
            on its own, even if the test process dies first.
        name: VM name. Random when unset.
        project: Defaults to PROJECT.
        zone: Defaults to the next zone from ZONES.
        metadata: Extra instance metadata. Keys managed by the harness are rejected.
        labels: Extra instance labels.
        machine_type: Defaults to e2-standard-4 (t2a-standard-4 on arm64).
            INSTANCE_SIZE overrides it when set.
        image_family_scope: Passed as --image-family-scope. Default: global.
        extra_create_arguments: Appended to the `instances create` command.
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    image_spec: str = Field(min_length=1)
    time_to_live: str = ""
    name: str = ""
    project: str = ""
    zone: str = ""
    metadata: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    machine_type: str = ""
    image_family_scope: str = ""
    extra_create_arguments: tuple[str, ...] = ()


@dataclass
class VM:
    """A single GCE instance owned by one test.

    Only the instance manager mutates a VM (IP refresh on restart, OS
    detection after readiness, deletion flag).
    """

    name: str
    project: str
    network: str
    image_spec: str
    zone: str
    machine_type: str
    id: int = 0
    ip_address: str = ""
    os: GuestOS = GuestOS()
    already_deleted: bool = False

    @property
    def platform(self) -> GuestPlatform:
        return platform_for_image(self.image_spec)


@dataclass
class ManagedInstanceGroupVM(VM):
    """The single instance of a managed instance group created for a test."""

    @property
    def managed_instance_group_name(self) -> str:
        return self.name + "-mig"

    @property
    def instance_template_name(self) -> str:
        return self.name + "-tmpl"

    @property
    def app_hub_workload_name(self) -> str:
        return self.name + "-wl"


# =============================================================================
# gcloud --format=json output
# =============================================================================


class _AccessConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    nat_ip: str = Field(default="", alias="natIP")


class _NetworkInterface(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    network_ip: str = Field(default="", alias="networkIP")
    access_configs: list[_AccessConfig] = Field(default_factory=list, alias="accessConfigs")


class _MetadataItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    value: str = ""


class _Metadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: list[_MetadataItem] = Field(default_factory=list)


class Instance(BaseModel):
    """The parts of a `gcloud compute instances` JSON record the harness reads."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: int | None = None
    """Serialized as a decimal string by gcloud."""
    network_interfaces: list[_NetworkInterface] = Field(default_factory=list, alias="networkInterfaces")
    metadata: _Metadata = Field(default_factory=_Metadata)


def _load_json(stdout: str) -> object:
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise InstanceParseError(f"could not parse JSON from {stdout!r}: {e}") from e


def extract_single_instance(stdout: str) -> Instance:
    """Parse a JSON list that must hold exactly one instance."""
    parsed = _load_json(stdout)
    if not isinstance(parsed, list) or len(parsed) != 1:
        raise InstanceParseError(
            f"should be exactly one instance in list. stdout: {stdout!r}",
            context={"stdout": stdout},
        )
    try:
        return Instance.model_validate(parsed[0])
    except ValidationError as e:
        raise InstanceParseError(f"unexpected instance JSON in {stdout!r}: {e}") from e


def parse_instance(stdout: str) -> Instance:
    """Parse a single JSON object, as printed by `instances describe`."""
    parsed = _load_json(stdout)
    try:
        return Instance.model_validate(parsed)
    except ValidationError as e:
        raise InstanceParseError(f"unexpected instance JSON in {stdout!r}: {e}") from e


def extract_id(stdout: str) -> int:
    """Instance ID from `create`/`start`/`list` output with --format=json."""
    instance = extract_single_instance(stdout)
    if instance.id is None:
        raise InstanceParseError(f"missing instance id in {stdout!r}")
    return instance.id


def extract_ip_address(stdout: str, *, use_internal_ip: bool) -> str:
    """IP address to ssh to.

    The external (NAT) IP by default. With `use_internal_ip` the internal IP
    is returned instead, which is the only one reachable from CI runners
    behind the project firewall.
    """
    instance = extract_single_instance(stdout)
    if not instance.network_interfaces:
        raise InstanceParseError(f"empty networkInterfaces list in {instance!r}")
    interface = instance.network_interfaces[0]

    if use_internal_ip:
        if not interface.network_ip:
            raise InstanceParseError(f"empty internal IP (networkInterfaces[0].networkIP) in {instance!r}")
        return interface.network_ip

    if not interface.access_configs:
        raise InstanceParseError(f"empty networkInterfaces[0].accessConfigs list in {instance!r}")
    nat_ip = interface.access_configs[0].nat_ip
    if not nat_ip:
        raise InstanceParseError(f"empty external IP (networkInterfaces[0].accessConfigs[0].natIP) in {instance!r}")
    return nat_ip


def extract_metadata(stdout: str) -> dict[str, str]:
    """Metadata items from `instances describe --format=json(metadata)`."""
    return {item.key: item.value for item in parse_instance(stdout).metadata.items}


def map_to_comma_separated_list(mapping: dict[str, str]) -> str:
    """Render {"a": "1", "b": "2"} as "a=1,b=2" for gcloud flags."""
    return ",".join(f"{k}={v}" for k, v in mapping.items())
