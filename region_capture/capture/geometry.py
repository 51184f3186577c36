"""Geometry analysis for capture regions.

Turns the raw probe measurements of an element into a page-absolute
``RegionGeometry``. Adjustments are applied in a fixed order:

1. base box (viewport rect + page scroll)
2. frame offset of an embedding sub-document
3. shadow expansion (box-shadow and text-shadow)
4. 2D transform about the transform origin
"""

import re
from typing import TYPE_CHECKING

import structlog

from region_capture.capture.errors import ElementNotFoundError
from region_capture.capture.models import (
    AffineMatrix,
    BoundingBox,
    ElementMetrics,
    RegionGeometry,
    ShadowExpansion,
)

if TYPE_CHECKING:
    from region_capture.capture.host import GeometryProbe

logger = structlog.get_logger(__name__)

SCROLLABLE_OVERFLOW = frozenset({"auto", "scroll"})
LONG_CONTENT_FACTOR = 1.5

_COLOR_FUNCTION = re.compile(r"[a-zA-Z-]+\([^()]*\)")
_LENGTH = re.compile(r"^(-?\d*\.?\d+(?:e-?\d+)?)(px)?$", re.IGNORECASE)
_MATRIX = re.compile(r"^\s*(matrix3d|matrix)\(([^)]*)\)\s*$", re.IGNORECASE)


def split_shadow_list(value: str) -> list[str]:
    """Split a comma-separated shadow list, ignoring commas inside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in value:
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
        if char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return [part for part in parts if part]


def shadow_extent(shadow: str) -> float:
    """Extent of a single shadow: ``max(|ox|, |oy|) + |blur| + |spread|``.

    Raises:
        ValueError: If the shadow has fewer than two lengths
    """
    without_colors = _COLOR_FUNCTION.sub(" ", shadow)
    lengths: list[float] = []
    for token in without_colors.split():
        match = _LENGTH.match(token)
        if match:
            lengths.append(float(match.group(1)))

    if len(lengths) < 2:
        raise ValueError(f"Malformed shadow: {shadow!r}")

    offset_x, offset_y = lengths[0], lengths[1]
    blur = lengths[2] if len(lengths) > 2 else 0.0
    spread = lengths[3] if len(lengths) > 3 else 0.0
    return max(abs(offset_x), abs(offset_y)) + abs(blur) + abs(spread)


def max_shadow_extent(value: str | None) -> float:
    """Largest extent over every shadow in a computed shadow value.

    Malformed entries contribute zero and are logged.
    """
    if not value or value.strip().lower() == "none":
        return 0.0

    extent = 0.0
    for shadow in split_shadow_list(value):
        try:
            extent = max(extent, shadow_extent(shadow))
        except ValueError:
            logger.warning("Ignoring malformed shadow", shadow=shadow)
    return extent


def parse_transform(value: str | None) -> AffineMatrix | None:
    """Parse a computed ``matrix(...)`` or ``matrix3d(...)`` transform.

    Returns None for ``none``, identity and unparseable values.
    """
    if not value or value.strip().lower() == "none":
        return None

    match = _MATRIX.match(value)
    if not match:
        logger.warning("Ignoring unsupported transform", transform=value)
        return None

    try:
        numbers = [float(part) for part in match.group(2).split(",")]
    except ValueError:
        logger.warning("Ignoring malformed transform", transform=value)
        return None

    if match.group(1).lower() == "matrix3d":
        if len(numbers) != 16:
            logger.warning("Ignoring malformed transform", transform=value)
            return None
        # Column-major 4x4; keep the 2D affine part.
        matrix = AffineMatrix(
            a=numbers[0], b=numbers[1], c=numbers[4], d=numbers[5], e=numbers[12], f=numbers[13]
        )
    else:
        if len(numbers) != 6:
            logger.warning("Ignoring malformed transform", transform=value)
            return None
        matrix = AffineMatrix(*numbers)

    return None if matrix.is_identity else matrix


def resolve_transform_origin(origin: str | None, box: BoundingBox) -> tuple[float, float]:
    """Resolve a computed transform-origin against a box; defaults to its center."""
    center = (box.x + box.width / 2, box.y + box.height / 2)
    if not origin:
        return center

    tokens = origin.split()
    if len(tokens) < 2:
        return center

    resolved = []
    for token, base, size in ((tokens[0], box.x, box.width), (tokens[1], box.y, box.height)):
        if token.endswith("%"):
            try:
                resolved.append(base + size * float(token[:-1]) / 100)
            except ValueError:
                return center
            continue
        match = _LENGTH.match(token)
        if not match:
            return center
        resolved.append(base + float(match.group(1)))
    return resolved[0], resolved[1]


def apply_transform(box: BoundingBox, matrix: AffineMatrix, origin: tuple[float, float]) -> BoundingBox:
    """Axis-aligned bounds of a box transformed about an origin."""
    ox, oy = origin
    corners = [
        (box.left, box.top),
        (box.right, box.top),
        (box.right, box.bottom),
        (box.left, box.bottom),
    ]
    transformed = []
    for x, y in corners:
        tx, ty = matrix.transform_point(x - ox, y - oy)
        transformed.append((tx + ox, ty + oy))
    return BoundingBox.from_points(transformed)


def parse_z_index(value: str | None) -> int:
    if not value or value == "auto":
        return 0
    try:
        return int(float(value))
    except ValueError:
        return 0


class GeometryAnalyzer:
    """Computes the true capture bounds of an element."""

    def __init__(self):
        self.log = logger.bind(component="geometry_analyzer")

    def analyze(self, metrics: ElementMetrics, selector: str = "") -> RegionGeometry:
        """
        Analyze probe measurements into a RegionGeometry.

        Args:
            metrics: Raw measurements of the element
            selector: Selector the metrics were taken for

        Returns:
            Page-absolute geometry of the capture target
        """
        layout_box = metrics.rect.translate(metrics.page_scroll_x, metrics.page_scroll_y)

        if metrics.frame is not None:
            if metrics.frame.cross_origin:
                # The probe measured the embedding element itself.
                self.log.info(
                    "Cross-origin frame, using embedding element bounds",
                    selector=selector,
                )
            else:
                layout_box = layout_box.translate(metrics.frame.x, metrics.frame.y)

        box = layout_box

        extent = max(max_shadow_extent(metrics.box_shadow), max_shadow_extent(metrics.text_shadow))
        shadow = ShadowExpansion.uniform(extent) if extent > 0 else None
        if shadow is not None:
            box = box.expand(shadow.top, shadow.right, shadow.bottom, shadow.left)

        matrix = parse_transform(metrics.transform)
        if matrix is not None:
            origin = resolve_transform_origin(metrics.transform_origin, layout_box)
            box = apply_transform(box, matrix, origin)

        overflow_scrolls = (
            metrics.overflow in SCROLLABLE_OVERFLOW or metrics.overflow_y in SCROLLABLE_OVERFLOW
        )
        scrolls_internally = overflow_scrolls and metrics.scroll_height > metrics.client_height
        is_scrollable = scrolls_internally or (
            metrics.scroll_height > LONG_CONTENT_FACTOR * metrics.viewport_height
        )

        if scrolls_internally:
            visible_height = metrics.client_height
        else:
            visible_height = min(metrics.rect.height, metrics.viewport_height)
        total_height = max(metrics.scroll_height, visible_height)

        geometry = RegionGeometry(
            selector=selector,
            bounding_box=box,
            layout_box=layout_box,
            scrollable_total_height=total_height,
            visible_height=visible_height,
            is_scrollable=is_scrollable,
            viewport_width=metrics.viewport_width,
            viewport_height=metrics.viewport_height,
            device_pixel_ratio=metrics.device_pixel_ratio,
            transform_matrix=matrix,
            shadow_expansion=shadow,
            frame_offset=metrics.frame,
            is_fixed_or_sticky=metrics.position in ("fixed", "sticky"),
            stack_order=parse_z_index(metrics.z_index),
            scrolls_internally=scrolls_internally,
        )

        self.log.debug(
            "Geometry analyzed",
            selector=selector,
            bounding_box=box.to_dict(),
            total_height=total_height,
            visible_height=visible_height,
            is_scrollable=is_scrollable,
        )
        return geometry

    async def analyze_element(self, probe: "GeometryProbe", selector: str) -> RegionGeometry:
        """Probe an element through the host and analyze it.

        Raises:
            ElementNotFoundError: If the probe finds no element for the selector
        """
        metrics = await probe.probe_element(selector)
        if metrics is None:
            raise ElementNotFoundError(f"No element matches selector {selector!r}")
        return self.analyze(metrics, selector=selector)
