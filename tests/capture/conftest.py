"""Shared fixtures for capture pipeline tests.

``FakeCaptureHost`` renders real PNG viewport rasters from a tall synthetic
content image whose rows all have distinct colors, so a correct stitch
reproduces the content image exactly.
"""

import asyncio
import io

import pytest
from PIL import Image

from region_capture.capture.models import (
    BoundingBox,
    CaptureSegment,
    ElementMetrics,
    MemoryUsage,
    RegionGeometry,
    ScrollOffset,
)
from region_capture.config import CaptureSettings

BACKGROUND = (200, 200, 200, 255)


def make_content(width: int, height: int) -> Image.Image:
    """RGBA image whose row ``r`` is colored ``(r % 256, r // 256, 128)``."""
    rows = (bytes((r % 256, (r // 256) % 256, 128, 255)) * width for r in range(height))
    return Image.frombytes("RGBA", (width, height), b"".join(rows))


def png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def decode(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGBA")


class FakeCaptureHost:
    """
    In-memory page holding one element.

    In element mode the element scrolls internally (overflow auto) and sits
    fully inside the viewport. In window mode the element is taller than
    the viewport and the window scrolls instead.
    """

    def __init__(
        self,
        *,
        content_height: int = 700,
        element_width: int = 200,
        client_height: int = 200,
        viewport: tuple[int, int] = (400, 300),
        element_x: int = 50,
        element_y: int = 40,
        dpr: float = 1.0,
        window_scroll: bool = False,
        max_reachable_scroll: float | None = None,
    ):
        self.content_height = content_height
        self.element_width = element_width
        self.client_height = client_height
        self.viewport_width, self.viewport_height = viewport
        self.element_x = element_x
        self.element_y = element_y
        self.dpr = dpr
        self.window_scroll = window_scroll
        self.max_reachable_scroll = max_reachable_scroll
        self.content = make_content(int(element_width * dpr), int(content_height * dpr))
        self.scroll = 0.0
        self.calls: list[tuple] = []

        self.missing = False
        self.capture_failures: list[BaseException] = []
        self.scroll_failures: list[BaseException] = []
        self.capture_delay: float = 0.0
        self.memory: MemoryUsage | None = None
        self.on_capture = None

    @property
    def max_scroll(self) -> float:
        if self.window_scroll:
            limit = max(0.0, self.element_y + self.content_height - self.viewport_height)
        else:
            limit = max(0.0, self.content_height - self.client_height)
        if self.max_reachable_scroll is not None:
            limit = min(limit, self.max_reachable_scroll)
        return limit

    def _element_top(self) -> float:
        """Viewport y of the element's top edge."""
        return self.element_y - self.scroll if self.window_scroll else self.element_y

    async def capture_visible_viewport(self) -> bytes:
        self.calls.append(("capture",))
        if self.capture_delay:
            await asyncio.sleep(self.capture_delay)
        if self.capture_failures:
            raise self.capture_failures.pop(0)
        if self.on_capture is not None:
            self.on_capture()

        dpr = self.dpr
        viewport = Image.new(
            "RGBA",
            (int(self.viewport_width * dpr), int(self.viewport_height * dpr)),
            BACKGROUND,
        )
        if self.window_scroll:
            viewport.paste(self.content, (int(self.element_x * dpr), int(self._element_top() * dpr)))
        else:
            visible = self.content.crop((
                0,
                int(self.scroll * dpr),
                self.content.width,
                int((self.scroll + self.client_height) * dpr),
            ))
            viewport.paste(visible, (int(self.element_x * dpr), int(self.element_y * dpr)))
        return png_bytes(viewport)

    async def set_scroll_position(self, selector: str, y: float) -> float:
        self.calls.append(("scroll", y))
        if self.scroll_failures:
            raise self.scroll_failures.pop(0)
        if self.window_scroll:
            self.scroll = min(max(0.0, self.element_y + y), self.max_scroll)
            return self.scroll - self.element_y
        self.scroll = min(max(0.0, y), self.max_scroll)
        return self.scroll

    async def reset_scroll(self, selector: str) -> None:
        self.calls.append(("reset",))
        self.scroll = 0.0

    async def measure_region(self, selector: str) -> BoundingBox | None:
        self.calls.append(("measure",))
        if self.missing:
            return None
        if self.window_scroll:
            top = self._element_top()
            visible_top = max(0.0, top)
            visible_bottom = min(float(self.viewport_height), top + self.content_height)
            return BoundingBox(self.element_x, visible_top, self.element_width, max(0.0, visible_bottom - visible_top))
        return BoundingBox(self.element_x, self.element_y, self.element_width, self.client_height)

    async def probe_element(self, selector: str) -> ElementMetrics | None:
        self.calls.append(("probe",))
        if self.missing:
            return None
        if self.window_scroll:
            return ElementMetrics(
                rect=BoundingBox(self.element_x, self._element_top(), self.element_width, self.content_height),
                page_scroll_y=self.scroll,
                viewport_width=self.viewport_width,
                viewport_height=self.viewport_height,
                scroll_height=self.content_height,
                client_height=self.content_height,
                device_pixel_ratio=self.dpr,
            )
        return ElementMetrics(
            rect=BoundingBox(self.element_x, self.element_y, self.element_width, self.client_height),
            viewport_width=self.viewport_width,
            viewport_height=self.viewport_height,
            scroll_height=self.content_height,
            client_height=self.client_height,
            overflow="auto",
            overflow_y="auto",
            device_pixel_ratio=self.dpr,
        )

    async def device_pixel_ratio(self) -> float:
        return self.dpr

    async def sample_memory(self) -> MemoryUsage | None:
        return self.memory


class MemoryPersistence:
    """Persistence collaborator keeping artifacts in a dict."""

    def __init__(self, failures: int = 0, error: BaseException | None = None):
        self.saved: dict[str, bytes] = {}
        self.calls: list[tuple[str, bool]] = []
        self.failures = failures
        self.error = error

    async def save(self, output, *, interactive: bool = False) -> str:
        self.calls.append((output.filename, interactive))
        if self.failures > 0:
            self.failures -= 1
            raise self.error or OSError("disk full")
        self.saved[output.filename] = output.data
        return f"memory://{output.filename}"


class RecordingReporter:
    """Progress reporter recording everything it receives."""

    def __init__(self):
        self.updates = []
        self.errors = []

    async def report_progress(self, update) -> None:
        self.updates.append(update)

    async def report_error(self, notification) -> None:
        self.errors.append(notification)


@pytest.fixture
def settings():
    """Settings with no waits so the pipeline runs instantly."""
    return CaptureSettings(
        settle_delay_ms=0,
        retry_base_delay_ms=0,
        operation_timeout_ms=2000,
        session_grace_period_s=0.0,
        enable_memory_cleanup=False,
    )


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested delays."""
    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    sleep.delays = delays
    return sleep


@pytest.fixture
def element_host():
    """Host with an internally scrolling 200x200 element over 700px of content."""
    return FakeCaptureHost()


@pytest.fixture
def window_host():
    """Host with a 700px tall element in a 300px tall viewport."""
    return FakeCaptureHost(window_scroll=True, element_y=0, client_height=700)


@pytest.fixture
def make_geometry():
    """Factory for RegionGeometry with sensible defaults."""

    def factory(
        total: float = 700,
        visible: float = 200,
        scrollable: bool = True,
        box: BoundingBox | None = None,
        layout: BoundingBox | None = None,
        dpr: float = 1.0,
        selector: str = "#feed",
    ) -> RegionGeometry:
        layout = layout or BoundingBox(50, 40, 200, visible)
        return RegionGeometry(
            selector=selector,
            bounding_box=box or layout,
            layout_box=layout,
            scrollable_total_height=total,
            visible_height=visible,
            is_scrollable=scrollable,
            viewport_width=400,
            viewport_height=300,
            device_pixel_ratio=dpr,
        )

    return factory


@pytest.fixture
def make_segment():
    """Factory for CaptureSegment over a solid raster."""

    def factory(
        index: int,
        y: float,
        box: BoundingBox,
        observed_y: float | None = None,
        raster: bytes | None = None,
        size: tuple[int, int] = (400, 300),
    ) -> CaptureSegment:
        if raster is None:
            raster = png_bytes(Image.new("RGBA", size, (index * 40 % 256, 0, 0, 255)))
        return CaptureSegment(
            raster=raster,
            requested_offset=ScrollOffset(0, y, False),
            observed_region_box=box,
            sequence_index=index,
            observed_offset=ScrollOffset(0, observed_y if observed_y is not None else y, False),
        )

    return factory


@pytest.fixture
def make_host():
    """Factory for FakeCaptureHost with custom dimensions."""
    return FakeCaptureHost


@pytest.fixture
def make_persistence():
    """Factory for MemoryPersistence failing a given number of times."""
    return MemoryPersistence


@pytest.fixture
def reporter():
    return RecordingReporter()
