"""Region capture and stitching engine.

Captures a page region that may exceed the viewport by scrolling through
it, capturing overlapping segments and stitching them into one raster.
"""

__version__ = "0.1.0"

from region_capture.capture import (
    CaptureError,
    DirectoryPersistence,
    EncodeOptions,
    ImageFormat,
    PlaywrightCaptureHost,
    RegionCaptureService,
)
from region_capture.config import CaptureSettings, get_settings

__all__ = [
    "__version__",
    "CaptureSettings",
    "get_settings",
    "RegionCaptureService",
    "PlaywrightCaptureHost",
    "DirectoryPersistence",
    "EncodeOptions",
    "ImageFormat",
    "CaptureError",
]
