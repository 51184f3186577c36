"""Data models for region capture.

This module contains the dataclasses and enums shared by the capture
pipeline: geometry of the analyzed region, scroll offsets, captured
segments, stitch steps and the encoded output handed to persistence.
"""

import base64
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ImageFormat(str, Enum):
    """Encoded output formats."""

    PNG = "png"
    JPEG = "jpeg"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return ".jpg" if self == ImageFormat.JPEG else ".png"


class SessionStatus(str, Enum):
    """Lifecycle status of a capture session."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ERROR, SessionStatus.CANCELLED)


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in logical (CSS) pixels."""

    x: float
    y: float
    width: float
    height: float

    @property
    def left(self) -> float:
        return self.x

    @property
    def top(self) -> float:
        return self.y

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def translate(self, dx: float, dy: float) -> "BoundingBox":
        return BoundingBox(self.x + dx, self.y + dy, self.width, self.height)

    def expand(self, top: float, right: float, bottom: float, left: float) -> "BoundingBox":
        """Grow each edge outward by the given amount (negative values shrink)."""
        return BoundingBox(
            x=self.x - left,
            y=self.y - top,
            width=self.width + left + right,
            height=self.height + top + bottom,
        )

    def scale(self, factor: float) -> "BoundingBox":
        return BoundingBox(
            self.x * factor, self.y * factor, self.width * factor, self.height * factor
        )

    @classmethod
    def from_points(cls, points: list[tuple[float, float]]) -> "BoundingBox":
        """Axis-aligned box enclosing the given points."""
        xs = [p[0] for p in points]
        ys = [p[1] for p in points]
        return cls(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BoundingBox":
        return cls(
            x=float(data.get("x", 0.0)),
            y=float(data.get("y", 0.0)),
            width=float(data.get("width", 0.0)),
            height=float(data.get("height", 0.0)),
        )


@dataclass(frozen=True)
class ShadowExpansion:
    """Per-edge outward growth caused by box and text shadows."""

    top: float = 0.0
    right: float = 0.0
    bottom: float = 0.0
    left: float = 0.0

    @classmethod
    def uniform(cls, extent: float) -> "ShadowExpansion":
        return cls(extent, extent, extent, extent)

    @property
    def is_zero(self) -> bool:
        return not any((self.top, self.right, self.bottom, self.left))

    def to_dict(self) -> dict[str, float]:
        return {"top": self.top, "right": self.right, "bottom": self.bottom, "left": self.left}


@dataclass(frozen=True)
class FrameOffset:
    """Offset of an embedded sub-document within the top-level page."""

    x: float
    y: float
    cross_origin: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y, "cross_origin": self.cross_origin}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FrameOffset":
        return cls(
            x=float(data.get("x", 0.0)),
            y=float(data.get("y", 0.0)),
            cross_origin=bool(data.get("cross_origin", False)),
        )


@dataclass(frozen=True)
class AffineMatrix:
    """2D affine transform in CSS ``matrix(a, b, c, d, e, f)`` order.

    Maps ``(x, y)`` to ``(a*x + c*y + e, b*x + d*y + f)``.
    """

    a: float = 1.0
    b: float = 0.0
    c: float = 0.0
    d: float = 1.0
    e: float = 0.0
    f: float = 0.0

    @classmethod
    def identity(cls) -> "AffineMatrix":
        return cls()

    @property
    def is_identity(self) -> bool:
        return (self.a, self.b, self.c, self.d, self.e, self.f) == (1.0, 0.0, 0.0, 1.0, 0.0, 0.0)

    def transform_point(self, x: float, y: float) -> tuple[float, float]:
        return (self.a * x + self.c * y + self.e, self.b * x + self.d * y + self.f)

    def to_dict(self) -> dict[str, float]:
        return {"a": self.a, "b": self.b, "c": self.c, "d": self.d, "e": self.e, "f": self.f}


@dataclass
class ElementMetrics:
    """Raw measurements reported by the geometry probe for one element.

    ``rect`` is viewport-relative; everything else is taken verbatim from
    the element's computed style and the window. For a cross-origin frame
    the probe measures the embedding element and ``frame`` is informational.
    """

    rect: BoundingBox
    page_scroll_x: float = 0.0
    page_scroll_y: float = 0.0
    viewport_width: float = 0.0
    viewport_height: float = 0.0
    scroll_height: float = 0.0
    client_height: float = 0.0
    overflow: str = "visible"
    overflow_y: str = "visible"
    transform: str = "none"
    transform_origin: str | None = None
    box_shadow: str = "none"
    text_shadow: str = "none"
    position: str = "static"
    z_index: str = "auto"
    device_pixel_ratio: float = 1.0
    frame: FrameOffset | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ElementMetrics":
        """Build metrics from the probe's JSON payload."""
        frame = data.get("frame")
        return cls(
            rect=BoundingBox.from_dict(data["rect"]),
            page_scroll_x=float(data.get("page_scroll_x", 0.0)),
            page_scroll_y=float(data.get("page_scroll_y", 0.0)),
            viewport_width=float(data.get("viewport_width", 0.0)),
            viewport_height=float(data.get("viewport_height", 0.0)),
            scroll_height=float(data.get("scroll_height", 0.0)),
            client_height=float(data.get("client_height", 0.0)),
            overflow=data.get("overflow") or "visible",
            overflow_y=data.get("overflow_y") or "visible",
            transform=data.get("transform") or "none",
            transform_origin=data.get("transform_origin"),
            box_shadow=data.get("box_shadow") or "none",
            text_shadow=data.get("text_shadow") or "none",
            position=data.get("position") or "static",
            z_index=str(data.get("z_index", "auto")),
            device_pixel_ratio=float(data.get("device_pixel_ratio") or 1.0),
            frame=FrameOffset.from_dict(frame) if frame else None,
        )


@dataclass(frozen=True)
class RegionGeometry:
    """The analyzed capture target.

    ``bounding_box`` is the effective capture box (after frame, shadow and
    transform adjustments) and ``layout_box`` the element's own box before
    shadow and transform expansion. Both are page-absolute.
    """

    selector: str
    bounding_box: BoundingBox
    layout_box: BoundingBox
    scrollable_total_height: float
    visible_height: float
    is_scrollable: bool
    viewport_width: float
    viewport_height: float
    device_pixel_ratio: float = 1.0
    transform_matrix: AffineMatrix | None = None
    shadow_expansion: ShadowExpansion | None = None
    frame_offset: FrameOffset | None = None
    is_fixed_or_sticky: bool = False
    stack_order: int = 0
    scrolls_internally: bool = False

    @property
    def max_scroll(self) -> float:
        return max(0.0, self.scrollable_total_height - self.visible_height)

    @property
    def outset(self) -> ShadowExpansion:
        """Per-edge difference between the capture box and the layout box."""
        return ShadowExpansion(
            top=self.layout_box.top - self.bounding_box.top,
            right=self.bounding_box.right - self.layout_box.right,
            bottom=self.bounding_box.bottom - self.layout_box.bottom,
            left=self.layout_box.left - self.bounding_box.left,
        )

    def expand_to_capture(self, box: BoundingBox) -> BoundingBox:
        """Grow a measured layout box by this geometry's outset."""
        outset = self.outset
        return box.expand(outset.top, outset.right, outset.bottom, outset.left)

    def to_dict(self) -> dict[str, Any]:
        return {
            "selector": self.selector,
            "bounding_box": self.bounding_box.to_dict(),
            "layout_box": self.layout_box.to_dict(),
            "scrollable_total_height": self.scrollable_total_height,
            "visible_height": self.visible_height,
            "is_scrollable": self.is_scrollable,
            "viewport_width": self.viewport_width,
            "viewport_height": self.viewport_height,
            "device_pixel_ratio": self.device_pixel_ratio,
            "transform_matrix": self.transform_matrix.to_dict() if self.transform_matrix else None,
            "shadow_expansion": self.shadow_expansion.to_dict() if self.shadow_expansion else None,
            "frame_offset": self.frame_offset.to_dict() if self.frame_offset else None,
            "is_fixed_or_sticky": self.is_fixed_or_sticky,
            "stack_order": self.stack_order,
            "scrolls_internally": self.scrolls_internally,
        }


@dataclass(frozen=True)
class ScrollOffset:
    """A planned or observed scroll position relative to the region's top."""

    x: float
    y: float
    is_final: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y, "is_final": self.is_final}


@dataclass(frozen=True)
class CaptureSegment:
    """One viewport raster captured at one scroll offset.

    ``observed_region_box`` is re-measured after the scroll settled, in
    viewport logical coordinates clipped to the viewport.
    """

    raster: bytes
    requested_offset: ScrollOffset
    observed_region_box: BoundingBox
    sequence_index: int
    observed_offset: ScrollOffset | None = None

    @property
    def effective_offset(self) -> ScrollOffset:
        """Scroll position actually reached, falling back to the requested one."""
        return self.observed_offset or self.requested_offset


@dataclass(frozen=True)
class CropArea:
    """Integer crop rectangle in physical pixels."""

    x: int
    y: int
    width: int
    height: int

    def to_box(self) -> tuple[int, int, int, int]:
        """Pillow ``(left, upper, right, lower)`` box."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass(frozen=True)
class StitchStep:
    """How one segment is placed onto the stitched canvas."""

    sequence_index: int
    crop: CropArea
    overlap_height: int
    contributed_height: int
    dest_y: int

    @property
    def skipped(self) -> bool:
        return self.contributed_height == 0


@dataclass(frozen=True)
class EncodeOptions:
    """Requested output encoding."""

    format: ImageFormat = ImageFormat.PNG
    quality: float = 0.9
    filename_template: str = "screenshot_{timestamp}"

    def __post_init__(self) -> None:
        if not 0.0 <= self.quality <= 1.0:
            raise ValueError(f"quality must be within [0, 1], got {self.quality}")


@dataclass(frozen=True)
class EncodedOutput:
    """Final encoded artifact, produced once per session."""

    data: bytes
    format: ImageFormat
    quality: float
    filename: str
    width: int
    height: int
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    @property
    def data_uri(self) -> str:
        return f"data:{self.format.mime_type};base64,{self.base64}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format.value,
            "quality": self.quality,
            "filename": self.filename,
            "width": self.width,
            "height": self.height,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ProgressUpdate:
    """Progress notification for one session."""

    session_id: str
    progress: int
    status: SessionStatus
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "progress": self.progress,
            "status": self.status.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class MemoryUsage:
    """Host memory sample in bytes."""

    used_bytes: int
    total_bytes: int

    @property
    def ratio(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.used_bytes / self.total_bytes
