"""Guest platform detection from image specs and OS release IDs.

The platform variant is chosen once from the image spec when a VM is
created, then dispatched with ``match`` wherever Linux and Windows guests
need different commands.

Example:
    >>> from gce_testing.guest_os import GuestPlatform, platform_for_image
    >>> match platform_for_image("windows-cloud:windows-2022-core"):
    ...     case GuestPlatform.WINDOWS | GuestPlatform.WINDOWS_CORE:
    ...         pass  # PowerShell over ssh
    ...     case GuestPlatform.LINUX | GuestPlatform.SUSE:
    ...         pass  # bash over ssh
"""

from enum import Enum

SLES_OS_IDS: frozenset[str] = frozenset({"sles", "sles_sap"})
SUSE_OS_IDS: frozenset[str] = SLES_OS_IDS | {"opensuse", "opensuse-leap"}
WINDOWS_OS_ID = "windows"

DLVM_IMAGE_PREFIX = "ml-images"
DLVM_GPU_DEBIAN_IMAGE = "common-gpu-debian-11-py310"


class GuestPlatform(str, Enum):
    """Guest variant, decides the shell and the readiness strategy."""

    LINUX = "linux"
    WINDOWS = "windows"
    WINDOWS_CORE = "windows-core"
    """Server Core: no desktop experience, slower to accept ssh."""
    SUSE = "suse"
    """SLES / openSUSE: readiness is bounded and followed by a sudo probe."""

    @property
    def is_windows(self) -> bool:
        return self in (GuestPlatform.WINDOWS, GuestPlatform.WINDOWS_CORE)


def is_windows(image_spec: str) -> bool:
    return image_spec.startswith("windows-")


def is_windows_core(image_spec: str) -> bool:
    return is_windows(image_spec) and image_spec.endswith("-core")


def is_arm(image_spec: str) -> bool:
    return "arm64" in image_spec


def is_suse_image_spec(image_spec: str) -> bool:
    return image_spec.startswith(("suse-", "opensuse-")) or "sles-" in image_spec


def is_rhel7_sap_ha(image_spec: str) -> bool:
    """RHEL 7 SAP HA images ship with RHUI repos that no longer resolve."""
    return "rhel-7" in image_spec and image_spec.startswith("rhel-sap-cloud")


def is_dlvm(image_spec: str) -> bool:
    """Deep Learning VM images (project ml-images)."""
    return image_spec.startswith(DLVM_IMAGE_PREFIX)


def is_debian_based(image_spec: str) -> bool:
    return "debian" in image_spec or "ubuntu" in image_spec


def os_kind(image_spec: str) -> str:
    """"windows" or "linux", as used in test matrix names."""
    return "windows" if is_windows(image_spec) else "linux"


def is_sles(os_id: str) -> bool:
    return os_id in SLES_OS_IDS


def is_suse(os_id: str) -> bool:
    return os_id in SUSE_OS_IDS


def platform_for_image(image_spec: str) -> GuestPlatform:
    """Select the guest variant for an image spec."""
    if is_windows_core(image_spec):
        return GuestPlatform.WINDOWS_CORE
    if is_windows(image_spec):
        return GuestPlatform.WINDOWS
    if is_suse_image_spec(image_spec):
        return GuestPlatform.SUSE
    return GuestPlatform.LINUX


def syslog_location(image_spec: str) -> str:
    """Path of the system log on a Linux guest."""
    return "/var/log/syslog" if is_debian_based(image_spec) else "/var/log/messages"
