"""Error taxonomy shared by the reconcilers.

Only transient errors make a handler fail; invalid specs and missing
dependencies are recorded in status and picked up again by the resync timer.
"""

TRANSIENT_STATUS_CODES = {409, 429, 500, 502, 503, 504}

BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 300.0


class ReconcileError(Exception):
    """Base class for reconciliation failures."""

    reason = "ReconciliationFailed"


class TransientReconcileError(ReconcileError):
    """Conflict, throttling or temporary unavailability of the API server."""


class InvalidSpecError(ReconcileError):
    """The resource spec can never converge until a human changes it."""

    reason = "InvalidSpec"


class MissingDependencyError(ReconcileError):
    """A referenced object does not exist (yet)."""

    reason = "MissingDependency"


class CertificateGenerationError(ReconcileError):
    """Key or certificate generation failed."""

    reason = "CertificateGenerationFailed"


def classify_api_error(exc, action="call the API server"):
    """Map an ApiException to the reconcile error taxonomy.

    Returns None for 404, which callers treat as "nothing to do".
    """
    if exc.status == 404:
        return None
    if exc.status in TRANSIENT_STATUS_CODES:
        return TransientReconcileError(
            f"failed to {action}: {exc.status} {exc.reason}"
        )
    if exc.status == 422:
        return InvalidSpecError(f"failed to {action}: {exc.reason}")
    return ReconcileError(f"failed to {action}: {exc.status} {exc.reason}")


def backoff_delay(retry, base=BACKOFF_BASE_SECONDS, cap=BACKOFF_CAP_SECONDS):
    """Exponential backoff for the given retry count."""
    return min(base * (2 ** max(retry, 0)), cap)
