"""Constants for gce-testing timeouts, retry budgets and fixed names.

Durations are in seconds. Modules read these through the module
(``constants.X``) at call time so tests can shrink them.
"""

from typing import Final

# ============================================================================
# Test Timeouts
# ============================================================================

SUGGESTED_TIMEOUT_SECONDS: Final[int] = 2 * 60 * 60
"""Recommended limit for a whole test before the caller cancels it.
Must stay below the 4 hour hard limit of the CI runner so VMs still get
cleaned up when a command hangs."""

# ============================================================================
# VM Creation / Readiness
# ============================================================================

VM_INIT_TIMEOUT_SECONDS: Final[float] = 20 * 60
"""Deadline for a single create attempt (provision + readiness + remediation)."""

VM_CREATE_ATTEMPT_BUDGET: Final[int] = 3
"""Overall create deadline is this many times VM_INIT_TIMEOUT_SECONDS, which
guarantees at least three attempts even when every attempt is slow."""

VM_CREATE_BACKOFF_SECONDS: Final[float] = 60
"""Fixed pause between create attempts."""

VM_INIT_BACKOFF_SECONDS: Final[float] = 10
"""Fixed pause between readiness polls."""

VM_INIT_POKE_SSH_TIMEOUT_SECONDS: Final[float] = 30
"""Deadline for a single readiness poll over ssh."""

SUSE_STARTUP_MAX_WAIT_SECONDS: Final[float] = 5 * 60
"""SUSE images give up early on readiness; a fresh VM is usually faster."""

SUSE_STARTUP_MAX_ATTEMPTS: Final[int] = int(SUSE_STARTUP_MAX_WAIT_SECONDS // VM_INIT_BACKOFF_SECONDS)

SLES_STARTUP_DELAY_SECONDS: Final[float] = 60
SLES_STARTUP_SUDO_DELAY_SECONDS: Final[float] = 5
SLES_STARTUP_SUDO_MAX_ATTEMPTS: Final[int] = 60

SLES_REGISTER_ATTEMPTS: Final[int] = 5
SLES_REGISTER_BACKOFF_SECONDS: Final[float] = 5
SLES_ZYPPER_ATTEMPTS: Final[int] = 120
SLES_ZYPPER_BACKOFF_SECONDS: Final[float] = 5

MIG_STABLE_TIMEOUT_SECONDS: Final[int] = 300
"""Passed to `gcloud ... wait-until --stable --timeout`."""

# ============================================================================
# Start / Delete
# ============================================================================

START_TIMEOUT_SECONDS: Final[float] = 20 * 60
START_BACKOFF_SECONDS: Final[float] = 60

DELETE_TIMEOUT_SECONDS: Final[float] = 10 * 60
"""Deletion runs on its own deadline, independent of the test's cancellation."""

DELETE_MAX_ATTEMPTS: Final[int] = 11
"""One attempt plus ten retries."""

DELETE_BACKOFF_SECONDS: Final[float] = 30

# ============================================================================
# Backend Queries
# ============================================================================

QUERY_MAX_ATTEMPTS: Final[int] = 40
"""Metric lookups: 40 attempts x 10s = 6m40s."""

QUERY_MAX_ATTEMPTS_METRIC_MISSING: Final[int] = 5
QUERY_MAX_ATTEMPTS_LOG_MISSING: Final[int] = 5
QUERY_BACKOFF_SECONDS: Final[float] = 10

LOG_QUERY_MAX_ATTEMPTS: Final[int] = 15
"""Log lookups: 15 attempts x 30s = 7m30s."""

LOG_QUERY_BACKOFF_SECONDS: Final[float] = 30

TRACE_QUERY_DERATE: Final[int] = 6
"""Each trace listing costs 25 quota tokens, so trace polls are spaced
this many query backoffs apart."""

TRACE_QUERY_MAX_ATTEMPTS: Final[int] = QUERY_MAX_ATTEMPTS // TRACE_QUERY_DERATE

# ============================================================================
# Guest Access
# ============================================================================

SSH_USER_NAME: Final[str] = "test_user"

SSH_OPTIONS: Final[tuple[str, ...]] = (
    # ssh can hang on a brand new VM without an explicit connect timeout.
    "-oConnectTimeout=120",
    # Host keys are unknown at the start of the test.
    "-oStrictHostKeyChecking=no",
    # Avoids the "host key changed" banner on reused addresses.
    "-oUserKnownHostsFile=/dev/null",
    # Hides "Permanently added <ip> to the list of known hosts".
    "-oLogLevel=ERROR",
    # Windows may fall back to a password prompt before OpenSSH is ready.
    "-oPreferredAuthentications=publickey",
)

DEFAULT_MACHINE_TYPE: Final[str] = "e2-standard-4"
DEFAULT_ARM_MACHINE_TYPE: Final[str] = "t2a-standard-4"
DEFAULT_NETWORK: Final[str] = "default"
DEFAULT_IMAGE_FAMILY_SCOPE: Final[str] = "global"

DENY_EGRESS_TRAFFIC_TAG: Final[str] = "test-ops-agent-deny-egress-traffic-tag"

AGENT_SERVICES: Final[tuple[str, ...]] = (
    "google-cloud-ops-agent",
    "google-cloud-ops-agent-fluent-bit",
    "google-cloud-ops-agent-opentelemetry-collector",
)
"""systemd units that receive environment overrides on Linux guests."""

DEFAULT_LOG_UPLOAD_URL_ROOT: Final[str] = (
    "https://console.cloud.google.com/storage/browser/ops-agents-public-buckets-test-logs/"
)
