"""Exception hierarchy for gce-testing.

All exceptions inherit from HarnessError base class.

Hierarchy:
    HarnessError (base)
    ├── TransientError (retryable marker base)
    │   └── RetriableBackendError      ← quota, internal, unavailable, lock contention
    ├── PermanentError (non-retryable marker base)
    │   ├── ConfigurationError         ← bad input, reserved metadata key, malformed zones
    │   ├── PermanentBackendError      ← backend refused the request for good
    │   └── InstanceParseError         ← gcloud JSON missing ID / IP fields
    ├── ExhaustedRetriesError          ← retry budget spent, carries attempts + cause
    ├── InconclusiveQueryError         ← fewer series than the declared minimum
    ├── UnexpectedDataError            ← data found while asserting absence
    ├── CommandError                   ← subprocess exited non-zero
    │   ├── CommandTimeoutError        ← subprocess killed at its deadline
    │   └── RemoteCommandError         ← command failed on the guest over ssh
    └── CombinedError                  ← primary failure plus cleanup failure

Whether an error is worth retrying is decided by the predicates in
gce_testing.classify, which look at both the type and the message text
(gcloud only reports failures as text on stderr).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gce_testing.models import CommandOutput


class HarnessError(Exception):
    """Base exception for all harness errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(HarnessError):
    """Base for transient errors that may succeed on retry."""


class PermanentError(HarnessError):
    """Base for permanent errors that won't succeed on retry."""


class ConfigurationError(PermanentError):
    """Invalid caller input.

    Raised for an empty command vector, a malformed zone spec, an image spec
    without a project delimiter, or reuse of a metadata key that the harness
    manages itself. Never retried.
    """


class RetriableBackendError(TransientError):
    """Backend reported a condition that usually clears up on its own."""


class PermanentBackendError(PermanentError):
    """Backend rejected the request in a way retrying will not fix."""


class InstanceParseError(PermanentError):
    """gcloud output did not describe exactly one usable instance."""


# =============================================================================
# Retry / Query Outcome Errors
# =============================================================================


class ExhaustedRetriesError(HarnessError):
    """Retry budget spent without success.

    Attributes:
        attempts: Number of attempts made
        cause: Exception raised by the final attempt (None when the final
            attempt returned a confirmed-empty result)
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx["attempts"] = attempts
        full = f"{message}: exhausted retries after {attempts} attempt(s)"
        if cause is not None:
            full += f"; last error: {cause}"
        super().__init__(full, ctx)
        self.attempts = attempts
        self.cause = cause


class InconclusiveQueryError(HarnessError):
    """Query returned data, but fewer series than the caller requires.

    Distinct from a confirmed-empty result: something was found, just not
    enough of it to decide.
    """


# Name kept for callers that match on the historical sentinel.
ErrInvalidIteratorLength = InconclusiveQueryError


class UnexpectedDataError(HarnessError):
    """Data was found while asserting that it should be absent."""


# =============================================================================
# Command Errors
# =============================================================================


class CommandError(HarnessError):
    """Subprocess exited with a non-zero status.

    The captured output is attached so callers can inspect partial results.

    Attributes:
        output: Captured stdout/stderr
        exit_code: Process exit code (None when the process was killed)
    """

    def __init__(
        self,
        message: str,
        output: CommandOutput,
        exit_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.output = output
        self.exit_code = exit_code


class CommandTimeoutError(CommandError):
    """Subprocess was terminated because its deadline expired."""


class RemoteCommandError(CommandError):
    """Command failed on the guest (or ssh could not reach it)."""


class CombinedError(HarnessError):
    """Several failures that must all be reported.

    Used when cleanup after a failure fails too: the primary error comes
    first, followed by every cleanup error.

    Attributes:
        errors: The individual exceptions, primary first
    """

    def __init__(self, errors: Sequence[BaseException], context: dict[str, Any] | None = None):
        message = "; ".join(str(e) for e in errors)
        super().__init__(message, context)
        self.errors = list(errors)


def combine_errors(primary: BaseException, *others: BaseException | None) -> BaseException:
    """Merge a primary failure with follow-up failures without dropping any.

    Returns the primary error untouched when every follow-up is None.
    """
    extra = [e for e in others if e is not None]
    if not extra:
        return primary
    combined = CombinedError([primary, *extra])
    combined.__cause__ = primary
    return combined
