"""Error taxonomy for region capture.

Each failure the pipeline can raise is an explicit ``CaptureError`` subclass
carrying its ``ErrorKind`` and the ``ErrorInfo`` shown to users. Keyword
classification only happens for foreign exceptions at the host boundary,
see ``classify_exception``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classified failure kinds."""

    ELEMENT_NOT_FOUND = "element_not_found"
    PERMISSION_DENIED = "permission_denied"
    CAPTURE_FAILED = "capture_failed"
    PROCESSING_ERROR = "processing_error"
    DOWNLOAD_FAILED = "download_failed"


class ErrorSeverity(str, Enum):
    """Severity of a failure as reported to the progress collaborator."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def auto_dismiss(self) -> bool:
        """High and critical notifications stay until the user dismisses them."""
        return self.rank < ErrorSeverity.HIGH.rank

    def __lt__(self, other: "ErrorSeverity") -> bool:
        if isinstance(other, ErrorSeverity):
            return self.rank < other.rank
        return NotImplemented

    def __gt__(self, other: "ErrorSeverity") -> bool:
        if isinstance(other, ErrorSeverity):
            return self.rank > other.rank
        return NotImplemented


_SEVERITY_RANK = {
    ErrorSeverity.LOW: 0,
    ErrorSeverity.MEDIUM: 1,
    ErrorSeverity.HIGH: 2,
    ErrorSeverity.CRITICAL: 3,
}


@dataclass(frozen=True)
class ErrorInfo:
    """User-facing description of a classified failure."""

    kind: ErrorKind
    message: str
    severity: ErrorSeverity
    retryable: bool
    fallback_available: bool
    user_action: str | None = None
    technical_details: str | None = None

    @property
    def should_offer_manual_save(self) -> bool:
        if self.kind == ErrorKind.DOWNLOAD_FAILED:
            return True
        return self.fallback_available and self.severity != ErrorSeverity.CRITICAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "fallback_available": self.fallback_available,
            "user_action": self.user_action,
            "technical_details": self.technical_details,
        }


ERROR_DEFINITIONS: dict[ErrorKind, ErrorInfo] = {
    ErrorKind.ELEMENT_NOT_FOUND: ErrorInfo(
        kind=ErrorKind.ELEMENT_NOT_FOUND,
        message="Element not found on the page",
        severity=ErrorSeverity.MEDIUM,
        retryable=False,
        fallback_available=False,
        user_action="Select the element to capture again",
    ),
    ErrorKind.PERMISSION_DENIED: ErrorInfo(
        kind=ErrorKind.PERMISSION_DENIED,
        message="Permission denied for screenshot capture",
        severity=ErrorSeverity.HIGH,
        retryable=False,
        fallback_available=False,
        user_action="Check the browser permissions and reload the page",
    ),
    ErrorKind.CAPTURE_FAILED: ErrorInfo(
        kind=ErrorKind.CAPTURE_FAILED,
        message="Failed to capture screenshot",
        severity=ErrorSeverity.MEDIUM,
        retryable=True,
        fallback_available=True,
        user_action="Retrying the capture",
    ),
    ErrorKind.PROCESSING_ERROR: ErrorInfo(
        kind=ErrorKind.PROCESSING_ERROR,
        message="Error processing screenshot",
        severity=ErrorSeverity.MEDIUM,
        retryable=True,
        fallback_available=True,
        user_action="Retrying in simplified mode",
    ),
    ErrorKind.DOWNLOAD_FAILED: ErrorInfo(
        kind=ErrorKind.DOWNLOAD_FAILED,
        message="Failed to download screenshot",
        severity=ErrorSeverity.LOW,
        retryable=True,
        fallback_available=True,
        user_action="Preparing a manual save option",
    ),
}

RETRYABLE_KINDS = frozenset(kind for kind, info in ERROR_DEFINITIONS.items() if info.retryable)


def create_error_info(
    kind: ErrorKind,
    technical_details: str | None = None,
    message: str | None = None,
) -> ErrorInfo:
    """Build the ErrorInfo for a kind, optionally overriding the message."""
    base = ERROR_DEFINITIONS[kind]
    return ErrorInfo(
        kind=base.kind,
        message=message or base.message,
        severity=base.severity,
        retryable=base.retryable,
        fallback_available=base.fallback_available,
        user_action=base.user_action,
        technical_details=technical_details,
    )


class CaptureError(Exception):
    """Base class for classified capture failures."""

    kind: ErrorKind = ErrorKind.PROCESSING_ERROR

    def __init__(self, message: str | None = None, *, technical_details: str | None = None):
        self.info = create_error_info(
            self.kind,
            technical_details=technical_details or message,
        )
        super().__init__(message or self.info.message)

    @property
    def severity(self) -> ErrorSeverity:
        return self.info.severity

    @property
    def retryable(self) -> bool:
        return self.info.retryable


class ElementNotFoundError(CaptureError):
    """The target element is missing or its handle is stale."""

    kind = ErrorKind.ELEMENT_NOT_FOUND


class PermissionDeniedError(CaptureError):
    """The host refused access to the page or the capture primitive."""

    kind = ErrorKind.PERMISSION_DENIED


class CaptureFailedError(CaptureError):
    """The viewport capture primitive failed or timed out."""

    kind = ErrorKind.CAPTURE_FAILED


class ScrollControlFailedError(CaptureFailedError):
    """The scroll primitive failed or timed out."""


class ProcessingError(CaptureError):
    """Decoding, stitching or encoding failed."""

    kind = ErrorKind.PROCESSING_ERROR


class StitchingFailedError(ProcessingError):
    """Segments could not be composited into one raster."""


class DownloadFailedError(CaptureError):
    """The persistence collaborator could not save the artifact."""

    kind = ErrorKind.DOWNLOAD_FAILED


class CaptureCancelledError(Exception):
    """The session was cancelled; never retried or classified."""

    def __init__(self, session_id: str | None = None):
        self.session_id = session_id
        super().__init__(f"Capture session {session_id} cancelled" if session_id else "Capture cancelled")


ERROR_CLASSES: dict[ErrorKind, type[CaptureError]] = {
    ErrorKind.ELEMENT_NOT_FOUND: ElementNotFoundError,
    ErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    ErrorKind.CAPTURE_FAILED: CaptureFailedError,
    ErrorKind.PROCESSING_ERROR: ProcessingError,
    ErrorKind.DOWNLOAD_FAILED: DownloadFailedError,
}

# Checked in order; first match wins.
_KEYWORDS: list[tuple[tuple[str, ...], ErrorKind]] = [
    (("element", "selector"), ErrorKind.ELEMENT_NOT_FOUND),
    (("permission", "denied", "unauthorized"), ErrorKind.PERMISSION_DENIED),
    (("download", "save"), ErrorKind.DOWNLOAD_FAILED),
    (("capture", "screenshot"), ErrorKind.CAPTURE_FAILED),
]


def classify_message(message: str) -> ErrorKind:
    """Map an opaque host error message to an error kind."""
    lowered = message.lower()
    for keywords, kind in _KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return ErrorKind.PROCESSING_ERROR


def classify_exception(exc: BaseException) -> CaptureError:
    """Wrap a foreign exception in the matching CaptureError subclass.

    CaptureErrors are returned unchanged.
    """
    if isinstance(exc, CaptureError):
        return exc
    message = str(exc) or type(exc).__name__
    error = ERROR_CLASSES[classify_message(message)](message, technical_details=message)
    error.__cause__ = exc
    return error
