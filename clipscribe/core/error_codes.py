"""
Standardised error handling for ClipScribe.
"""

from clipscribe.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class OperationCancelled(JobError):
    """Raised when a cancellation token fires; its own terminal outcome."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(ErrorCode.CANCELLED, message, retryable=False)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def describe_error(exc: BaseException) -> str:
    """One-line, user-facing message for any exception."""
    if isinstance(exc, JobError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"
