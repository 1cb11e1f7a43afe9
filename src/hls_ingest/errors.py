"""Error taxonomy for the ingestion pipeline.

Callers can rely on four concrete failure classes:

- TransientStorageError: object store put/get/delete/list failed after the
  bounded retry policy was exhausted.
- TranscoderFailure: ffmpeg exited non-zero, timed out, or produced unusable
  output. Terminal for the current attempt.
- InvalidStateTransition: the requested operation is not legal for the
  record's current state. Raised before any side effect.
- NotFound: unknown video id, version group, or an expired/purged backup.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "PIPELINE_ERROR"


class TransientStorageError(PipelineError):
    """Object store operation failed (retryable at the call site)."""

    code = "STORAGE_UNAVAILABLE"

    def __init__(self, message: str, operation: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.key = key


class TranscoderFailure(PipelineError):
    """External transcoder failed for this attempt."""

    code = "TRANSCODER_FAILED"

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr_tail: str = "",
        artifacts: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        self.artifacts = artifacts or []


class InvalidStateTransition(PipelineError):
    """Operation rejected because of the record's current state."""

    code = "INVALID_STATE"


class NotFound(PipelineError):
    """Requested record does not exist (or no longer exists)."""

    code = "NOT_FOUND"


def truncate_error(message: Optional[str], limit: int = 500) -> Optional[str]:
    """Trim an error message for storage in a TEXT column."""
    if not message:
        return None
    return message if len(message) <= limit else message[: limit - 3] + "..."
