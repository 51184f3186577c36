"""Host collaborators for region capture.

The pipeline talks to the rendered page through three primitives (viewport
capture, scroll control, geometry probe) and hands its artifact to a
persistence collaborator. ``PlaywrightCaptureHost`` implements the
primitives on a Playwright page; ``DirectoryPersistence`` writes artifacts
to disk.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit

import structlog
from playwright.async_api import Frame, Page

from region_capture.capture.errors import DownloadFailedError, ElementNotFoundError
from region_capture.capture.models import BoundingBox, ElementMetrics, EncodedOutput, FrameOffset, MemoryUsage

logger = structlog.get_logger(__name__)


class ViewportCapturer(Protocol):
    """Captures the currently visible viewport."""

    async def capture_visible_viewport(self) -> bytes:
        """Return a PNG raster of the viewport at the current device pixel ratio."""
        ...


class ScrollController(Protocol):
    """Scrolls a region."""

    async def set_scroll_position(self, selector: str, y: float) -> float:
        """Scroll the region to ``y`` and return the position actually reached."""
        ...

    async def reset_scroll(self, selector: str) -> None:
        ...


class GeometryProbe(Protocol):
    """Measures elements on the page."""

    async def measure_region(self, selector: str) -> BoundingBox | None:
        """Current viewport box of the region clipped to the viewport, None if missing."""
        ...

    async def probe_element(self, selector: str) -> ElementMetrics | None:
        ...

    async def device_pixel_ratio(self) -> float:
        ...

    async def sample_memory(self) -> MemoryUsage | None:
        ...


class CaptureHost(ViewportCapturer, ScrollController, GeometryProbe, Protocol):
    """All three page primitives together."""


class PersistenceCollaborator(Protocol):
    """Saves encoded artifacts."""

    async def save(self, output: EncodedOutput, *, interactive: bool = False) -> str:
        """Persist the artifact and return where it was stored."""
        ...


# JavaScript probe returning the raw element measurements, or null
PROBE_ELEMENT_JS = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    return {
        rect: {x: rect.left, y: rect.top, width: rect.width, height: rect.height},
        page_scroll_x: window.scrollX,
        page_scroll_y: window.scrollY,
        viewport_width: window.innerWidth,
        viewport_height: window.innerHeight,
        scroll_height: el.scrollHeight,
        client_height: el.clientHeight,
        overflow: style.overflow,
        overflow_y: style.overflowY,
        transform: style.transform,
        transform_origin: style.transformOrigin,
        box_shadow: style.boxShadow,
        text_shadow: style.textShadow,
        position: style.position,
        z_index: style.zIndex,
        device_pixel_ratio: window.devicePixelRatio || 1
    };
}
"""

# Viewport box of the element clipped to the viewport, or null
MEASURE_REGION_JS = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    const rect = el.getBoundingClientRect();
    const left = Math.max(0, rect.left);
    const top = Math.max(0, rect.top);
    const right = Math.min(window.innerWidth, rect.right);
    const bottom = Math.min(window.innerHeight, rect.bottom);
    return {x: left, y: top, width: Math.max(0, right - left), height: Math.max(0, bottom - top)};
}
"""

# Scrolls the element itself when it scrolls internally, otherwise the window.
# Returns the reached position relative to the element's top.
SET_SCROLL_JS = """
([selector, y]) => {
    const el = document.querySelector(selector);
    if (!el) throw new Error(`Element not found: ${selector}`);
    const style = window.getComputedStyle(el);
    const overflow = `${style.overflow} ${style.overflowY}`;
    if (/(auto|scroll)/.test(overflow) && el.scrollHeight > el.clientHeight) {
        el.scrollTop = y;
        return el.scrollTop;
    }
    const top = el.getBoundingClientRect().top + window.scrollY;
    window.scrollTo(window.scrollX, top + y);
    return window.scrollY - top;
}
"""

RESET_SCROLL_JS = """
(selector) => {
    const el = document.querySelector(selector);
    if (el) {
        const style = window.getComputedStyle(el);
        const overflow = `${style.overflow} ${style.overflowY}`;
        if (/(auto|scroll)/.test(overflow) && el.scrollHeight > el.clientHeight) {
            el.scrollTop = 0;
            return;
        }
    }
    window.scrollTo(0, 0);
}
"""

# Offset of an iframe's content box, in viewport and page coordinates
FRAME_OFFSET_JS = """
(el) => {
    const rect = el.getBoundingClientRect();
    const x = rect.left + el.clientLeft;
    const y = rect.top + el.clientTop;
    return {x: x, y: y, page_x: x + window.scrollX, page_y: y + window.scrollY};
}
"""

MEMORY_JS = """
() => {
    if (!performance.memory) return null;
    return {used: performance.memory.usedJSHeapSize, total: performance.memory.totalJSHeapSize};
}
"""


@dataclass
class _Target:
    """Where selectors are evaluated and how to map results to the page."""

    context: Page | Frame
    selector: str
    viewport_x: float = 0.0
    viewport_y: float = 0.0
    frame: FrameOffset | None = None


def same_origin(first: str, second: str) -> bool:
    a, b = urlsplit(first), urlsplit(second)
    return (a.scheme, a.hostname, a.port) == (b.scheme, b.hostname, b.port)


class PlaywrightCaptureHost:
    """
    Capture primitives backed by a Playwright page.

    When ``frame_selector`` is given, selectors are resolved inside that
    iframe. Cross-origin frames are never entered; the iframe element itself
    is used as the capture target instead.
    """

    def __init__(self, page: Page, frame_selector: str | None = None):
        self.page = page
        self.frame_selector = frame_selector
        self.log = logger.bind(component="playwright_host")

    async def _resolve(self, selector: str) -> _Target:
        if self.frame_selector is None:
            return _Target(self.page, selector)

        handle = await self.page.query_selector(self.frame_selector)
        if handle is None:
            raise ElementNotFoundError(f"Frame element not found: {self.frame_selector}")

        offset = await handle.evaluate(FRAME_OFFSET_JS)
        frame = await handle.content_frame()
        if frame is None or not same_origin(frame.url, self.page.url):
            self.log.info("Cross-origin frame, capturing embedding element", frame=self.frame_selector)
            return _Target(
                self.page,
                self.frame_selector,
                frame=FrameOffset(offset["page_x"], offset["page_y"], cross_origin=True),
            )

        return _Target(
            frame,
            selector,
            viewport_x=offset["x"],
            viewport_y=offset["y"],
            frame=FrameOffset(offset["page_x"], offset["page_y"]),
        )

    async def capture_visible_viewport(self) -> bytes:
        return await self.page.screenshot(type="png", full_page=False)

    async def set_scroll_position(self, selector: str, y: float) -> float:
        target = await self._resolve(selector)
        actual = await target.context.evaluate(SET_SCROLL_JS, [target.selector, y])
        return float(actual)

    async def reset_scroll(self, selector: str) -> None:
        target = await self._resolve(selector)
        await target.context.evaluate(RESET_SCROLL_JS, target.selector)

    async def measure_region(self, selector: str) -> BoundingBox | None:
        target = await self._resolve(selector)
        box = await target.context.evaluate(MEASURE_REGION_JS, target.selector)
        if box is None:
            return None
        return BoundingBox.from_dict(box).translate(target.viewport_x, target.viewport_y)

    async def probe_element(self, selector: str) -> ElementMetrics | None:
        target = await self._resolve(selector)
        data = await target.context.evaluate(PROBE_ELEMENT_JS, target.selector)
        if data is None:
            return None
        metrics = ElementMetrics.from_dict(data)
        metrics.frame = target.frame
        return metrics

    async def device_pixel_ratio(self) -> float:
        return float(await self.page.evaluate("() => window.devicePixelRatio || 1"))

    async def sample_memory(self) -> MemoryUsage | None:
        data = await self.page.evaluate(MEMORY_JS)
        if not data:
            return None
        return MemoryUsage(used_bytes=int(data["used"]), total_bytes=int(data["total"]))


class DirectoryPersistence:
    """Writes encoded artifacts into a directory.

    Automatic saves never overwrite an existing file; a numeric suffix is
    added instead. Interactive (manual) saves write to the exact filename.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.log = logger.bind(component="directory_persistence")

    def _unique_path(self, filename: str) -> Path:
        path = self.directory / filename
        counter = 1
        while path.exists():
            path = self.directory / f"{Path(filename).stem} ({counter}){Path(filename).suffix}"
            counter += 1
        return path

    def _write(self, filename: str, data: bytes, interactive: bool) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / filename if interactive else self._unique_path(filename)
        path.write_bytes(data)
        return path

    async def save(self, output: EncodedOutput, *, interactive: bool = False) -> str:
        """
        Save an artifact.

        Raises:
            DownloadFailedError: If the file cannot be written
        """
        try:
            path = await asyncio.to_thread(self._write, output.filename, output.data, interactive)
        except OSError as e:
            raise DownloadFailedError(f"Failed to save {output.filename}: {e}") from e

        self.log.info(
            "Artifact saved",
            path=str(path),
            size_bytes=output.size_bytes,
            interactive=interactive,
        )
        return str(path)
