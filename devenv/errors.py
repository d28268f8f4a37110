"""
Exception taxonomy for snapshot generation, staging and restore.

Errors fall in three groups:
- Transient: retried by the caller (resource conflicts, pods not yet ready)
- Conflict/state: never retried (in-progress restore, digest mismatch)
- Fatal: abort the pipeline (missing backup, unknown target, auth failure,
  malformed documents)

Kubernetes API errors are classified by HTTP status and the Status `reason`
returned by the API server, never by message text.
"""

import json
from typing import Any, List, Optional

from kubernetes.client.rest import ApiException


class DevenvError(Exception):
    """Base exception for all developer environment errors."""
    pass


class RetryAttemptsExhausted(DevenvError):
    """Raised when a Backoff ran out of attempts."""

    def __init__(self, message: str, attempts: int, last_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


class CommandError(DevenvError):
    """An external command exited unsuccessfully."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class RuntimeNotFoundError(DevenvError):
    """No cluster runtime registered under the requested name."""
    pass


class PodsNotReadyError(DevenvError):
    """Pods did not become ready before the readiness timeout."""

    def __init__(self, message: str, diagnostics: Optional[List[Any]] = None):
        super().__init__(message)
        self.diagnostics = diagnostics or []

    def __str__(self) -> str:
        base = super().__str__()
        if not self.diagnostics:
            return base
        details = "\n".join(d.describe() for d in self.diagnostics)
        return f"{base}\n{details}"


# =============================================================================
# OBJECT STORE
# =============================================================================

class ObjectStoreError(DevenvError):
    """Base exception for object store failures."""
    pass


class ObjectNotFoundError(ObjectStoreError):
    """The requested key does not exist."""

    def __init__(self, bucket: str, key: str):
        super().__init__(f"object '{key}' not found in bucket '{bucket}'")
        self.bucket = bucket
        self.key = key


class ObjectStoreAuthError(ObjectStoreError):
    """Credentials were rejected by the object store."""
    pass


class ObjectIntegrityError(ObjectStoreError):
    """The object store rejected an upload because its content hash did not match."""
    pass


# =============================================================================
# SNAPSHOTS
# =============================================================================

class SnapshotError(DevenvError):
    """Base exception for snapshot lifecycle failures."""
    pass


class SnapshotNotFoundError(SnapshotError):
    """Unknown snapshot target or channel, or a channel with no snapshots."""
    pass


class MalformedDocumentError(SnapshotError):
    """A lock document, marker or hand-off record could not be parsed."""
    pass


class ChecksumMismatchError(SnapshotError):
    """Downloaded archive bytes do not hash to the expected digest."""

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"downloaded snapshot failed checksum validation (expected {expected}, got {actual})"
        )
        self.expected = expected
        self.actual = actual


class BackupNotFoundError(SnapshotError):
    """The backup referenced by a snapshot does not exist in the backup system."""
    pass


class RestoreConflictError(SnapshotError):
    """A restore with the same name is already in progress."""
    pass


class WatchClosedError(SnapshotError):
    """A watch subscription ended before a terminal phase was observed."""
    pass


class StagingStepError(SnapshotError):
    """A step of the snapshot stager failed."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"failed to run step {step}: {cause}")
        self.step = step


class StagingJobError(SnapshotError):
    """The in-cluster staging job failed."""
    pass


# =============================================================================
# KUBERNETES ERROR CLASSIFICATION
# =============================================================================

def _status_reason(exc: ApiException) -> Optional[str]:
    """Extract the `reason` field of a Kubernetes Status body, if present."""
    if not exc.body:
        return None
    try:
        body = json.loads(exc.body)
    except (TypeError, ValueError):
        return None
    if isinstance(body, dict):
        return body.get("reason")
    return None


def is_not_found(exc: BaseException) -> bool:
    """Check if an exception is a Kubernetes 404."""
    return isinstance(exc, ApiException) and exc.status == 404


def is_already_exists(exc: BaseException) -> bool:
    """Check if an exception reports that the resource already exists."""
    if isinstance(exc, ApiException) and exc.status == 409:
        return _status_reason(exc) == "AlreadyExists"
    return False


def is_conflict(exc: BaseException) -> bool:
    """
    Check if an exception is an optimistic-concurrency conflict
    ("the object has been modified").

    The API server answers both conflicts and duplicate creates with 409;
    only the Status reason tells them apart. Errors raised by the dynamic
    client subclass ApiException and are classified the same way.
    """
    if isinstance(exc, ApiException) and exc.status == 409:
        return _status_reason(exc) != "AlreadyExists"
    return False
