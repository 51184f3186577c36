"""Sequential scroll-and-capture orchestration."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from region_capture.capture.errors import (
    CaptureCancelledError,
    CaptureError,
    CaptureFailedError,
    ElementNotFoundError,
    ScrollControlFailedError,
)
from region_capture.capture.host import CaptureHost
from region_capture.capture.models import CaptureSegment, RegionGeometry, ScrollOffset
from region_capture.capture.performance import PerformanceController
from region_capture.capture.retry import RetryPolicy
from region_capture.config import CaptureSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SegmentCallback = Callable[[CaptureSegment, int], Awaitable[None]]


class CancellationToken:
    """Cooperative cancellation flag shared by a session's pipeline."""

    def __init__(self, session_id: str | None = None):
        self.session_id = session_id
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise CaptureCancelledError(self.session_id)


class CaptureOrchestrator:
    """
    Drives the scroll and capture primitives through a scroll plan.

    Steps run strictly in order because they share the page's scroll
    state. Every external call is bounded by a timeout and retried by the
    RetryPolicy. Scroll is reset before the first segment and, best effort,
    after the last one even on failure or cancellation.
    """

    def __init__(
        self,
        settings: CaptureSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        performance: PerformanceController | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or CaptureSettings()
        self.settle_delay_s = settings.settle_delay_ms / 1000
        self.timeout_s = settings.operation_timeout_ms / 1000
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.performance = performance
        self._sleep = sleep
        self.log = logger.bind(component="capture_orchestrator")

    async def _call(
        self,
        step: str,
        call: Callable[[], Awaitable[T]],
        timeout_error: type[CaptureError],
        token: CancellationToken,
    ) -> T:
        """One external call: timeout-bounded, retried, cancellation-aware."""

        async def attempt() -> T:
            token.raise_if_cancelled()
            try:
                result = await asyncio.wait_for(call(), timeout=self.timeout_s)
            except asyncio.TimeoutError as e:
                raise timeout_error(f"{step} timed out after {self.timeout_s}s") from e
            # Result of a call that finished after cancellation is discarded.
            token.raise_if_cancelled()
            return result

        return await self.retry_policy.execute(attempt, context=step)

    async def _restore_scroll(self, host: CaptureHost, selector: str) -> None:
        try:
            await asyncio.wait_for(host.reset_scroll(selector), timeout=self.timeout_s)
        except Exception as e:
            self.log.warning("Failed to restore scroll position", selector=selector, error=str(e))

    async def capture(
        self,
        host: CaptureHost,
        geometry: RegionGeometry,
        plan: list[ScrollOffset],
        *,
        cancel_token: CancellationToken | None = None,
        session_id: str | None = None,
        on_segment: SegmentCallback | None = None,
    ) -> list[CaptureSegment]:
        """
        Capture one segment per planned offset.

        Args:
            host: Page primitives
            geometry: Analyzed region
            plan: Scroll offsets from the planner
            cancel_token: Checked at every suspension point
            session_id: Session for memory monitoring
            on_segment: Awaited after each segment with ``(segment, total)``

        Returns:
            Segments in capture order

        Raises:
            CaptureFailedError: Capture or measurement failed after retries
            ScrollControlFailedError: Scrolling failed after retries
            ElementNotFoundError: The region disappeared
            CaptureCancelledError: The session was cancelled
        """
        token = cancel_token or CancellationToken(session_id)
        selector = geometry.selector
        segments: list[CaptureSegment] = []

        self.log.info("Capture started", selector=selector, planned_segments=len(plan))

        try:
            await self._call(
                "reset_scroll",
                lambda: host.reset_scroll(selector),
                ScrollControlFailedError,
                token,
            )

            for index, offset in enumerate(plan):
                actual_y = await self._call(
                    "scroll",
                    lambda: host.set_scroll_position(selector, offset.y),
                    ScrollControlFailedError,
                    token,
                )

                await self._sleep(self.settle_delay_s)
                token.raise_if_cancelled()

                raster = await self._call(
                    "capture_viewport",
                    host.capture_visible_viewport,
                    CaptureFailedError,
                    token,
                )
                box = await self._call(
                    "measure_region",
                    lambda: host.measure_region(selector),
                    CaptureFailedError,
                    token,
                )
                if box is None:
                    raise ElementNotFoundError(f"Element {selector!r} disappeared during capture")

                observed_y = offset.y if actual_y is None else float(actual_y)
                segment = CaptureSegment(
                    raster=raster,
                    requested_offset=offset,
                    observed_region_box=box,
                    sequence_index=index,
                    observed_offset=ScrollOffset(offset.x, observed_y, offset.is_final),
                )
                segments.append(segment)
                self.log.debug(
                    "Segment captured",
                    sequence_index=index,
                    requested_y=offset.y,
                    observed_y=observed_y,
                )

                if on_segment is not None:
                    await on_segment(segment, len(plan))
                if self.performance is not None and session_id is not None:
                    await self.performance.monitor_and_warn(session_id)

        except BaseException:
            # No partial results.
            segments.clear()
            raise

        finally:
            await self._restore_scroll(host, selector)

        self.log.info("Capture finished", selector=selector, segments=len(segments))
        return segments
