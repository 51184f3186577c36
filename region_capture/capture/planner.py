"""Scroll segment planning."""

import math

import structlog

from region_capture.capture.models import RegionGeometry, ScrollOffset

logger = structlog.get_logger(__name__)

DEFAULT_OVERLAP_FACTOR = 0.85
DEFAULT_MAX_SEGMENTS = 50


class ScrollSegmentPlanner:
    """
    Plans the minimal overlapping sequence of scroll offsets for a region.

    Each step advances ``visible_height * overlap_factor``, so consecutive
    segments overlap by ``(1 - overlap_factor)`` of the visible height. The
    last offset is clamped to the maximum scroll and marked final.
    """

    def __init__(
        self,
        overlap_factor: float = DEFAULT_OVERLAP_FACTOR,
        max_segments: int = DEFAULT_MAX_SEGMENTS,
    ):
        if not 0.0 < overlap_factor < 1.0:
            raise ValueError(f"overlap_factor must be within (0, 1), got {overlap_factor}")
        if max_segments < 1:
            raise ValueError(f"max_segments must be positive, got {max_segments}")
        self.overlap_factor = overlap_factor
        self.max_segments = max_segments
        self.log = logger.bind(component="scroll_planner")

    def _step(self, visible: float, max_step: float | None) -> float:
        step = visible * self.overlap_factor
        if max_step is not None and max_step > 0:
            step = min(step, max_step)
        return step

    def plan(self, geometry: RegionGeometry, max_step: float | None = None) -> list[ScrollOffset]:
        """
        Plan scroll offsets for a region.

        Args:
            geometry: Analyzed region
            max_step: Upper bound on the CSS pixels advanced per step, from
                the per-segment memory budget

        Returns:
            Offsets with non-decreasing ``y``; the last one is final
        """
        visible = geometry.visible_height
        total = geometry.scrollable_total_height

        if not geometry.is_scrollable or total <= visible or visible <= 0:
            return [ScrollOffset(0, 0, True)]

        max_scroll = total - visible
        step = self._step(visible, max_step)

        offsets: list[ScrollOffset] = []
        index = 0
        while index * step < max_scroll:
            offsets.append(ScrollOffset(0, index * step, False))
            index += 1
        offsets.append(ScrollOffset(0, max_scroll, True))

        if len(offsets) > self.max_segments:
            self.log.warning(
                "Segment cap reached, truncating capture",
                selector=geometry.selector,
                planned=len(offsets),
                max_segments=self.max_segments,
            )
            offsets = offsets[: self.max_segments]
            offsets[-1] = ScrollOffset(0, offsets[-1].y, True)

        self.log.debug(
            "Scroll plan ready",
            selector=geometry.selector,
            segments=len(offsets),
            step=step,
            max_scroll=max_scroll,
        )
        return offsets

    def estimate_segment_count(self, geometry: RegionGeometry, max_step: float | None = None) -> int:
        """Number of segments ``plan`` would produce, without building it."""
        visible = geometry.visible_height
        total = geometry.scrollable_total_height
        if not geometry.is_scrollable or total <= visible or visible <= 0:
            return 1
        step = self._step(visible, max_step)
        count = math.ceil((total - visible) / step) + 1
        return min(count, self.max_segments)
