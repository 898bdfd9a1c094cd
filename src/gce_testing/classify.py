"""Retry classifiers.

Pure predicates deciding whether a failure is worth another attempt. gcloud
reports every failure as text on stderr (embedded in CommandError messages),
so most of them match on message fragments; the Google client libraries
raise typed google.api_core exceptions, matched by type.

Anything not recognized is permanent.
"""

from google.api_core import exceptions as gexc

from gce_testing.exceptions import InconclusiveQueryError, TransientError
from gce_testing.guest_os import is_suse_image_spec, is_windows_core

# Fixed prefixes of readiness failures, recognized by the create classifiers.
STARTUP_FAILED_MESSAGE = "wait_for_start_linux() failed: waiting for startup timed out"
WINDOWS_STARTUP_FAILED_MESSAGE = "wait_for_start_windows() failed: ran out of attempts waiting for dummy command to run."
PREPARE_SLES_MESSAGE = "prepare_sles() failed"
MIG_STABLE_TIMEOUT_MESSAGE = "Timeout while waiting for group to become stable."

_CREATE_RETRIABLE_FRAGMENTS = (
    # Quota runs out when presubmits are re-run or several people test at once.
    "Quota",
    "Internal error",
    "currently unavailable",
    # Concurrent gcloud invocations share a sqlite credential cache.
    "database is locked",
)


def _message(err: BaseException) -> str:
    return str(err)


def should_retry_create_vm(err: BaseException, image_spec: str) -> bool:
    """Whether a failed create attempt for `image_spec` should be retried."""
    if isinstance(err, TransientError):
        return True
    message = _message(err)
    if any(fragment in message for fragment in _CREATE_RETRIABLE_FRAGMENTS):
        return True
    # windows-*-core instances sometimes never become reachable over ssh.
    if is_windows_core(image_spec) and WINDOWS_STARTUP_FAILED_MESSAGE in message:
        return True
    # SUSE instances sometimes never finish booting.
    if is_suse_image_spec(image_spec) and STARTUP_FAILED_MESSAGE in message:
        return True
    return PREPARE_SLES_MESSAGE in message


def should_retry_create_mig(err: BaseException, image_spec: str) -> bool:
    """Create classifier plus the managed instance group stabilization timeout."""
    return should_retry_create_vm(err, image_spec) or MIG_STABLE_TIMEOUT_MESSAGE in _message(err)


def should_retry_delete(err: BaseException) -> bool:
    """Quota and 50x responses from GCE are retried; everything else is final.

    A "not found" response is handled by the caller, see is_not_found().
    """
    message = _message(err)
    return "Quota" in message or "Error 50" in message


def is_not_found(err: BaseException) -> bool:
    """The resource does not exist (any more)."""
    return "not found" in _message(err)


def should_retry_start(err: BaseException) -> bool:
    """Starting a stopped VM can run out of CPU or IP quota."""
    return "Quota" in _message(err)


def is_retriable_lookup_error(err: BaseException) -> bool:
    """Whether a metric or trace lookup should be retried.

    Fewer series than required is retried, as are NotFound (metrics are
    created on first write and may not be queryable yet), Internal and
    ResourceExhausted (API quota).
    """
    if isinstance(err, InconclusiveQueryError):
        return True
    return isinstance(err, (gexc.NotFound, gexc.InternalServerError, gexc.ResourceExhausted))


def is_descriptor_not_found(err: BaseException) -> bool:
    """NOT_FOUND from Cloud Monitoring: the metric descriptor does not exist yet."""
    return isinstance(err, gexc.NotFound)


def is_retriable_log_error(err: BaseException) -> bool:
    message = _message(err)
    return "Internal error encountered" in message or "Quota" in message


def is_retriable_log_missing_error(err: BaseException) -> bool:
    return "Internal error encountered" in _message(err)
