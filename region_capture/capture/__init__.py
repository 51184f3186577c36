"""Region capture pipeline.

Analyzes a region's true bounds, plans overlapping scroll offsets, drives
the page's capture and scroll primitives, stitches the segments and
encodes the result.
"""

from .encoder import FormatEncoder, content_optimized_quality, generate_filename
from .errors import (
    CaptureCancelledError,
    CaptureError,
    CaptureFailedError,
    DownloadFailedError,
    ElementNotFoundError,
    ErrorInfo,
    ErrorKind,
    ErrorSeverity,
    PermissionDeniedError,
    ProcessingError,
    ScrollControlFailedError,
    StitchingFailedError,
    classify_exception,
)
from .geometry import GeometryAnalyzer
from .host import (
    CaptureHost,
    DirectoryPersistence,
    GeometryProbe,
    PersistenceCollaborator,
    PlaywrightCaptureHost,
    ScrollController,
    ViewportCapturer,
)
from .messages import MessageRouter, parse_request
from .models import (
    AffineMatrix,
    BoundingBox,
    CaptureSegment,
    CropArea,
    ElementMetrics,
    EncodedOutput,
    EncodeOptions,
    FrameOffset,
    ImageFormat,
    MemoryUsage,
    ProgressUpdate,
    RegionGeometry,
    ScrollOffset,
    SessionStatus,
    ShadowExpansion,
    StitchStep,
)
from .orchestrator import CancellationToken, CaptureOrchestrator
from .performance import DevicePreset, PerformanceController, device_preset, optimal_segment_pixel_budget
from .planner import ScrollSegmentPlanner
from .retry import RetryPolicy, with_retry
from .service import RegionCaptureService
from .session import CaptureSession, ErrorNotification, LoggingProgressReporter, ProgressReporter, SessionStore
from .stitcher import SegmentStitcher

__all__ = [
    # Models
    "AffineMatrix",
    "BoundingBox",
    "CaptureSegment",
    "CropArea",
    "ElementMetrics",
    "EncodedOutput",
    "EncodeOptions",
    "FrameOffset",
    "ImageFormat",
    "MemoryUsage",
    "ProgressUpdate",
    "RegionGeometry",
    "ScrollOffset",
    "SessionStatus",
    "ShadowExpansion",
    "StitchStep",
    # Errors
    "CaptureCancelledError",
    "CaptureError",
    "CaptureFailedError",
    "DownloadFailedError",
    "ElementNotFoundError",
    "ErrorInfo",
    "ErrorKind",
    "ErrorSeverity",
    "PermissionDeniedError",
    "ProcessingError",
    "ScrollControlFailedError",
    "StitchingFailedError",
    "classify_exception",
    # Pipeline
    "GeometryAnalyzer",
    "ScrollSegmentPlanner",
    "CaptureOrchestrator",
    "CancellationToken",
    "SegmentStitcher",
    "FormatEncoder",
    "generate_filename",
    "content_optimized_quality",
    "PerformanceController",
    "DevicePreset",
    "device_preset",
    "optimal_segment_pixel_budget",
    "RetryPolicy",
    "with_retry",
    # Hosts
    "CaptureHost",
    "ViewportCapturer",
    "ScrollController",
    "GeometryProbe",
    "PersistenceCollaborator",
    "PlaywrightCaptureHost",
    "DirectoryPersistence",
    # Sessions
    "CaptureSession",
    "ErrorNotification",
    "LoggingProgressReporter",
    "ProgressReporter",
    "SessionStore",
    "RegionCaptureService",
    # Messaging
    "MessageRouter",
    "parse_request",
]
