"""Performance control for capture sessions.

Advisory only: nothing here touches captured data. The controller sizes
segments against a memory budget, batches raster processing so long jobs
yield to the event loop, watches host memory and keeps per-session
metrics that feed recommendations and reports.
"""

import asyncio
import gc
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

import structlog

from region_capture.capture.errors import CaptureError, CaptureFailedError
from region_capture.capture.models import MemoryUsage
from region_capture.config import CaptureSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

BYTES_PER_PIXEL = 4
MIN_SEGMENT_SIZE = 100
MB = 1024 * 1024

MemorySampler = Callable[[], Awaitable[MemoryUsage | None]]


@dataclass(frozen=True)
class DevicePreset:
    """Static tuning values for a device class."""

    name: str
    max_segment_size: int
    compression_quality: float
    memory_threshold: int
    enable_progressive_loading: bool
    enable_memory_cleanup: bool
    adaptive_segment_size: bool


MOBILE_PRESET = DevicePreset("mobile", 1024, 0.8, 50 * MB, True, True, True)
TABLET_PRESET = DevicePreset("tablet", 1536, 0.85, 100 * MB, True, True, True)
HIGH_DPI_DESKTOP_PRESET = DevicePreset("high_dpi_desktop", 2048, 0.9, 200 * MB, True, False, True)
DESKTOP_PRESET = DevicePreset("desktop", 2048, 0.85, 150 * MB, False, False, False)


def device_preset(device_pixel_ratio: float, screen_width: float) -> DevicePreset:
    """Pick the preset for a ``(device_pixel_ratio, screen_width)`` band."""
    if device_pixel_ratio >= 2.5 and screen_width <= 414:
        return MOBILE_PRESET
    if device_pixel_ratio >= 2 and screen_width <= 1024:
        return TABLET_PRESET
    if device_pixel_ratio >= 2:
        return HIGH_DPI_DESKTOP_PRESET
    return DESKTOP_PRESET


def optimal_segment_pixel_budget(
    element_height: float,
    element_width: float,
    device_pixel_ratio: float,
    memory_threshold: int,
    max_segment_size: int = 2048,
) -> int:
    """
    Max physical rows per segment that fit in half the memory budget.

    Assumes 4 bytes per RGBA pixel and clamps to ``[100, max_segment_size]``.
    ``element_height`` does not affect the row budget.
    """
    row_bytes = max(element_width * device_pixel_ratio, 1) * BYTES_PER_PIXEL
    rows = int(memory_threshold // row_bytes // 2)
    return max(MIN_SEGMENT_SIZE, min(max_segment_size, rows))


def compression_ratio(original_size: int, compressed_size: int) -> float:
    if original_size == 0:
        return 0.0
    return (original_size - compressed_size) / original_size


def plan_batches(estimates: Sequence[float], threshold: float) -> list[list[int]]:
    """Greedy batches of indices whose summed estimate stays under the threshold.

    Every batch holds at least one item, even one that alone exceeds it.
    """
    batches: list[list[int]] = []
    current: list[int] = []
    current_total = 0.0
    for index, estimate in enumerate(estimates):
        if current and current_total + estimate > threshold:
            batches.append(current)
            current, current_total = [], 0.0
        current.append(index)
        current_total += estimate
    if current:
        batches.append(current)
    return batches


def _default_estimate(item: Any) -> float:
    if isinstance(item, (bytes, bytearray)):
        return float(len(item))
    return 0.0


@dataclass
class PerformanceMetrics:
    """Timing and resource metrics for one session."""

    start_time: float
    end_time: float | None = None
    duration_ms: float | None = None
    memory_usage: MemoryUsage | None = None
    segment_count: int | None = None
    image_size: int | None = None
    compression_ratio: float | None = None
    processing_time_per_segment_ms: float | None = None
    device_pixel_ratio: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_ms": self.duration_ms,
            "memory_used": self.memory_usage.used_bytes if self.memory_usage else None,
            "memory_total": self.memory_usage.total_bytes if self.memory_usage else None,
            "segment_count": self.segment_count,
            "image_size": self.image_size,
            "compression_ratio": self.compression_ratio,
            "processing_time_per_segment_ms": self.processing_time_per_segment_ms,
            "device_pixel_ratio": self.device_pixel_ratio,
            **self.extra,
        }


class PerformanceController:
    """Adaptive memory and time budgets for capture sessions."""

    def __init__(
        self,
        settings: CaptureSettings | None = None,
        memory_sampler: MemorySampler | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cleanup_pause_s: float = 0.1,
    ):
        settings = settings or CaptureSettings()
        self.settings = settings
        self.preset: DevicePreset | None = None
        self.memory_threshold = settings.memory_threshold_bytes
        self.max_segment_size = settings.max_segment_size
        self.timeout_ms = settings.operation_timeout_ms
        self.warning_ratio = settings.memory_warning_ratio
        self.cleanup_ratio = settings.memory_cleanup_ratio
        self.cleanup_interval_s = settings.memory_cleanup_interval_ms / 1000
        self.enable_progressive_loading = settings.enable_progressive_loading
        self.enable_memory_cleanup = settings.enable_memory_cleanup
        self.compression_quality = settings.default_quality

        self.memory_sampler = memory_sampler
        self._clock = clock
        self._sleep = sleep
        self._cleanup_pause_s = cleanup_pause_s
        self._last_cleanup: float | None = None
        self._release_callbacks: list[Callable[[], None]] = []
        self._metrics: dict[str, PerformanceMetrics] = {}
        self.log = logger.bind(component="performance")

    # Presets and sizing

    def apply_device_preset(self, preset: DevicePreset) -> None:
        """
        Tune limits for a device class.

        Limits are derived from the configured settings every time, so
        applying a preset again replaces the previous one. Configured size
        and memory limits are ceilings and feature switches can only be
        turned off by a preset.
        """
        settings = self.settings
        self.preset = preset
        self.max_segment_size = min(settings.max_segment_size, preset.max_segment_size)
        self.memory_threshold = min(settings.memory_threshold_bytes, preset.memory_threshold)
        self.compression_quality = preset.compression_quality
        self.enable_progressive_loading = settings.enable_progressive_loading and preset.enable_progressive_loading
        self.enable_memory_cleanup = settings.enable_memory_cleanup and preset.enable_memory_cleanup
        self.log.debug(
            "Device preset applied",
            preset=preset.name,
            max_segment_size=self.max_segment_size,
            memory_threshold=self.memory_threshold,
        )

    def segment_pixel_budget(self, element_height: float, element_width: float, device_pixel_ratio: float) -> int:
        return optimal_segment_pixel_budget(
            element_height,
            element_width,
            device_pixel_ratio,
            self.memory_threshold,
            self.max_segment_size,
        )

    def dynamic_segment_size(
        self,
        session_id: str,
        base_segment_size: int,
        current_index: int,
        total_segments: int,
        device_pixel_ratio: float,
    ) -> int:
        """Adjust a segment size from the session's observed speed and memory."""
        metrics = self._metrics.get(session_id)
        if metrics is None or current_index == 0:
            return base_segment_size

        elapsed_ms = (self._clock() - metrics.start_time) * 1000
        avg_ms = elapsed_ms / current_index
        memory_ratio = metrics.memory_usage.ratio if metrics.memory_usage else 0.0

        factor = 1.0
        if avg_ms > 1000:
            factor *= 0.8
        if memory_ratio > 0.7:
            factor *= 0.7
        elif memory_ratio < 0.3 and avg_ms < 500:
            factor *= 1.2
        if current_index > total_segments * 0.7 and avg_ms < 500:
            factor *= 1.2
        if device_pixel_ratio > 2:
            factor *= 0.9

        return max(MIN_SEGMENT_SIZE, int(base_segment_size * factor))

    @staticmethod
    def estimate_processing_time(
        element_width: float,
        element_height: float,
        device_pixel_ratio: float,
        is_long_capture: bool,
        segment_count: int | None = None,
    ) -> float:
        """Rough processing time estimate in milliseconds (at least one second)."""
        pixels = element_width * element_height * device_pixel_ratio * device_pixel_ratio
        estimate = pixels * 0.001
        if is_long_capture and segment_count:
            estimate += segment_count * 200
            estimate *= 1.5
        return max(1000.0, estimate)

    # Batching

    async def progressive_batch_process(
        self,
        items: Iterable[T],
        op: Callable[[T, int], Awaitable[R]],
        batch_memory_threshold: float | None = None,
        estimate: Callable[[T], float] = _default_estimate,
    ) -> list[R]:
        """
        Run ``op(item, index)`` over items in memory-bounded batches.

        Items within a batch run concurrently; results keep input order.
        Between batches the loop yields and, when enabled, runs a cleanup
        pass. With progressive loading disabled everything runs at once.
        """
        items = list(items)
        if not items:
            return []

        if not self.enable_progressive_loading:
            return list(await asyncio.gather(*(op(item, i) for i, item in enumerate(items))))

        threshold = batch_memory_threshold if batch_memory_threshold is not None else self.memory_threshold
        batches = plan_batches([estimate(item) for item in items], threshold)
        self.log.debug("Processing in batches", items=len(items), batches=len(batches))

        results: list[R] = []
        for number, batch in enumerate(batches):
            results.extend(await asyncio.gather(*(op(items[i], i) for i in batch)))
            if number < len(batches) - 1:
                if self.enable_memory_cleanup:
                    await self.perform_memory_cleanup()
                await self._sleep(0)
        return results

    # Memory

    def register_cleanup(self, callback: Callable[[], None]) -> None:
        """Register a callback that releases cached handles during cleanup."""
        self._release_callbacks.append(callback)

    def unregister_cleanup(self, callback: Callable[[], None]) -> None:
        if callback in self._release_callbacks:
            self._release_callbacks.remove(callback)

    async def sample_memory(self) -> MemoryUsage | None:
        if self.memory_sampler is None:
            return None
        return await self.memory_sampler()

    def should_perform_cleanup(self, usage: MemoryUsage) -> bool:
        if usage.ratio <= self.cleanup_ratio:
            return False
        if self._last_cleanup is None:
            return True
        return self._clock() - self._last_cleanup >= self.cleanup_interval_s

    async def perform_memory_cleanup(self) -> None:
        """Best-effort cleanup: release callbacks, garbage collection, short pause."""
        self._last_cleanup = self._clock()
        for callback in list(self._release_callbacks):
            try:
                callback()
            except Exception as e:
                self.log.warning("Cleanup callback failed", error=str(e))
        gc.collect()
        await self._sleep(self._cleanup_pause_s)

    async def monitor_and_warn(self, session_id: str) -> MemoryUsage | None:
        """Sample memory, warn above the warning ratio and clean up when allowed."""
        usage = await self.sample_memory()
        if usage is None:
            return None

        metrics = self._metrics.get(session_id)
        if metrics is not None:
            metrics.memory_usage = usage

        if usage.ratio > self.warning_ratio:
            self.log.warning(
                "High memory usage detected",
                session_id=session_id,
                usage_percent=round(usage.ratio * 100),
            )
            if self.should_perform_cleanup(usage):
                await self.perform_memory_cleanup()
        return usage

    def is_memory_usage_acceptable(self, session_id: str) -> bool:
        metrics = self._metrics.get(session_id)
        if metrics is None or metrics.memory_usage is None:
            return True
        return metrics.memory_usage.used_bytes < self.memory_threshold

    # Timeouts

    async def with_timeout(
        self,
        awaitable: Awaitable[T],
        timeout_ms: int | None = None,
        operation: str = "operation",
        timeout_error: type[CaptureError] = CaptureFailedError,
    ) -> T:
        """
        Await with a timeout.

        Raises:
            CaptureError: ``timeout_error`` (retryable by default) if the
                timeout elapses first
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self.timeout_ms
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise timeout_error(f"{operation} timed out after {timeout_ms}ms") from e

    # Metrics

    def start_monitoring(self, session_id: str, device_pixel_ratio: float | None = None) -> PerformanceMetrics:
        metrics = PerformanceMetrics(start_time=self._clock(), device_pixel_ratio=device_pixel_ratio)
        self._metrics[session_id] = metrics
        return metrics

    def update_metrics(self, session_id: str, **updates: Any) -> None:
        metrics = self._metrics.get(session_id)
        if metrics is None:
            return
        for key, value in updates.items():
            if hasattr(metrics, key) and key != "extra":
                setattr(metrics, key, value)
            else:
                metrics.extra[key] = value

    def end_monitoring(self, session_id: str) -> PerformanceMetrics | None:
        metrics = self._metrics.get(session_id)
        if metrics is None:
            return None
        metrics.end_time = self._clock()
        metrics.duration_ms = (metrics.end_time - metrics.start_time) * 1000
        if metrics.segment_count:
            metrics.processing_time_per_segment_ms = metrics.duration_ms / metrics.segment_count
        return replace(metrics)

    def get_metrics(self, session_id: str) -> PerformanceMetrics | None:
        return self._metrics.get(session_id)

    def clear_metrics(self, session_id: str) -> None:
        self._metrics.pop(session_id, None)

    def recommendations(self, session_id: str) -> list[str]:
        metrics = self._metrics.get(session_id)
        if metrics is None:
            return []

        recommendations = []
        if metrics.duration_ms and metrics.duration_ms > 10000:
            recommendations.append("Consider reducing image quality or segment size for faster processing")
        if metrics.memory_usage and metrics.memory_usage.used_bytes > metrics.memory_usage.total_bytes * 0.7:
            recommendations.append("High memory usage detected - enable progressive loading")
        if metrics.segment_count and metrics.segment_count > 20:
            recommendations.append("Large number of segments - consider increasing segment size")
        if metrics.compression_ratio and metrics.compression_ratio < 0.3:
            recommendations.append("Low compression ratio - consider using JPEG format for better file size")
        if metrics.device_pixel_ratio and metrics.device_pixel_ratio > 2:
            recommendations.append("High DPI display detected - consider optimizing for memory usage")
        return recommendations

    def performance_report(self, session_id: str) -> str:
        """Human-readable summary of a session's metrics."""
        metrics = self._metrics.get(session_id)
        if metrics is None:
            return "No metrics available"

        def fmt(value: Any, render: Callable[[Any], str]) -> str:
            return render(value) if value else "N/A"

        lines = [
            "=== Capture Performance Report ===",
            f"Duration: {fmt(metrics.duration_ms, lambda v: f'{v:.2f}ms')}",
            "Memory Usage: "
            + fmt(
                metrics.memory_usage,
                lambda m: f"{m.used_bytes / MB:.2f}MB / {m.total_bytes / MB:.2f}MB",
            ),
            f"Segments: {fmt(metrics.segment_count, str)}",
            f"Image Size: {fmt(metrics.image_size, lambda v: f'{v / 1024:.2f}KB')}",
            f"Compression Ratio: {fmt(metrics.compression_ratio, lambda v: f'{v * 100:.1f}%')}",
            f"Device Pixel Ratio: {fmt(metrics.device_pixel_ratio, str)}",
            "Processing Time Per Segment: "
            + fmt(metrics.processing_time_per_segment_ms, lambda v: f"{v:.2f}ms"),
            "",
            "Recommendations:",
            *(f"- {rec}" for rec in self.recommendations(session_id)),
        ]
        return "\n".join(lines)
