"""Tests for the Playwright host and directory persistence."""

from unittest.mock import AsyncMock, patch

import pytest

from region_capture.capture.errors import DownloadFailedError, ElementNotFoundError
from region_capture.capture.host import (
    MEASURE_REGION_JS,
    PROBE_ELEMENT_JS,
    RESET_SCROLL_JS,
    SET_SCROLL_JS,
    DirectoryPersistence,
    PlaywrightCaptureHost,
    same_origin,
)
from region_capture.capture.models import BoundingBox, EncodedOutput, FrameOffset, ImageFormat, MemoryUsage

PROBE_PAYLOAD = {
    "rect": {"x": 10, "y": 20, "width": 300, "height": 200},
    "page_scroll_x": 0,
    "page_scroll_y": 50,
    "viewport_width": 1280,
    "viewport_height": 720,
    "scroll_height": 900,
    "client_height": 200,
    "overflow": "visible",
    "overflow_y": "auto",
    "transform": "none",
    "box_shadow": "none",
    "position": "static",
    "z_index": "auto",
    "device_pixel_ratio": 2,
}


@pytest.fixture
def page():
    page = AsyncMock()
    page.url = "https://app.example.com/feed"
    return page


def framed_page(page, frame_url: str):
    frame = AsyncMock()
    frame.url = frame_url
    handle = AsyncMock()
    handle.evaluate.return_value = {"x": 100, "y": 60, "page_x": 100, "page_y": 560}
    handle.content_frame.return_value = frame
    page.query_selector.return_value = handle
    return frame


class TestSameOrigin:
    """Tests for same_origin."""

    def test_same(self):
        assert same_origin("https://a.com/x", "https://a.com/y?z=1")

    def test_different(self):
        assert not same_origin("https://a.com/x", "https://b.com/x")
        assert not same_origin("https://a.com/x", "http://a.com/x")
        assert not same_origin("https://a.com/x", "https://a.com:8443/x")


class TestPlaywrightCaptureHost:
    """Tests for PlaywrightCaptureHost on the top-level document."""

    @pytest.mark.asyncio
    async def test_capture_visible_viewport(self, page):
        page.screenshot.return_value = b"\x89PNG"

        assert await PlaywrightCaptureHost(page).capture_visible_viewport() == b"\x89PNG"
        page.screenshot.assert_awaited_once_with(type="png", full_page=False)

    @pytest.mark.asyncio
    async def test_probe_element(self, page):
        page.evaluate.return_value = PROBE_PAYLOAD

        metrics = await PlaywrightCaptureHost(page).probe_element("#feed")

        page.evaluate.assert_awaited_once_with(PROBE_ELEMENT_JS, "#feed")
        assert metrics.rect == BoundingBox(10, 20, 300, 200)
        assert metrics.page_scroll_y == 50
        assert metrics.device_pixel_ratio == 2.0
        assert metrics.frame is None

    @pytest.mark.asyncio
    async def test_probe_missing_element(self, page):
        page.evaluate.return_value = None
        assert await PlaywrightCaptureHost(page).probe_element("#gone") is None

    @pytest.mark.asyncio
    async def test_measure_region(self, page):
        page.evaluate.return_value = {"x": 10, "y": 0, "width": 300, "height": 180}

        box = await PlaywrightCaptureHost(page).measure_region("#feed")

        page.evaluate.assert_awaited_once_with(MEASURE_REGION_JS, "#feed")
        assert box == BoundingBox(10, 0, 300, 180)

    @pytest.mark.asyncio
    async def test_scroll(self, page):
        page.evaluate.return_value = 340

        host = PlaywrightCaptureHost(page)
        assert await host.set_scroll_position("#feed", 340.0) == 340.0
        page.evaluate.assert_awaited_with(SET_SCROLL_JS, ["#feed", 340.0])

        await host.reset_scroll("#feed")
        page.evaluate.assert_awaited_with(RESET_SCROLL_JS, "#feed")

    @pytest.mark.asyncio
    async def test_device_pixel_ratio(self, page):
        page.evaluate.return_value = 3
        assert await PlaywrightCaptureHost(page).device_pixel_ratio() == 3.0

    @pytest.mark.asyncio
    async def test_sample_memory(self, page):
        page.evaluate.return_value = {"used": 40_000_000, "total": 80_000_000}
        assert await PlaywrightCaptureHost(page).sample_memory() == MemoryUsage(40_000_000, 80_000_000)

        page.evaluate.return_value = None
        assert await PlaywrightCaptureHost(page).sample_memory() is None


class TestFrames:
    """Tests for resolving selectors inside iframes."""

    @pytest.mark.asyncio
    async def test_same_origin_frame(self, page):
        frame = framed_page(page, "https://app.example.com/embedded")
        frame.evaluate.return_value = {"x": 5, "y": 10, "width": 50, "height": 40}

        host = PlaywrightCaptureHost(page, frame_selector="iframe#content")
        box = await host.measure_region("#inner")

        page.query_selector.assert_awaited_with("iframe#content")
        frame.evaluate.assert_awaited_once_with(MEASURE_REGION_JS, "#inner")
        assert box == BoundingBox(105, 70, 50, 40)

    @pytest.mark.asyncio
    async def test_same_origin_frame_probe_carries_offset(self, page):
        frame = framed_page(page, "https://app.example.com/embedded")
        frame.evaluate.return_value = PROBE_PAYLOAD

        metrics = await PlaywrightCaptureHost(page, frame_selector="iframe").probe_element("#inner")

        assert metrics.frame == FrameOffset(100, 560)

    @pytest.mark.asyncio
    async def test_cross_origin_frame_targets_iframe_element(self, page):
        frame = framed_page(page, "https://ads.other.net/slot")
        page.evaluate.return_value = PROBE_PAYLOAD

        metrics = await PlaywrightCaptureHost(page, frame_selector="iframe#ad").probe_element("#inner")

        page.evaluate.assert_awaited_once_with(PROBE_ELEMENT_JS, "iframe#ad")
        frame.evaluate.assert_not_awaited()
        assert metrics.frame.cross_origin is True

    @pytest.mark.asyncio
    async def test_missing_frame(self, page):
        page.query_selector.return_value = None

        with pytest.raises(ElementNotFoundError):
            await PlaywrightCaptureHost(page, frame_selector="iframe#gone").measure_region("#inner")


def artifact(filename: str = "shot.png", data: bytes = b"data") -> EncodedOutput:
    return EncodedOutput(data, ImageFormat.PNG, 0.9, filename, 1, 1)


class TestDirectoryPersistence:
    """Tests for DirectoryPersistence."""

    @pytest.mark.asyncio
    async def test_save_creates_directory(self, tmp_path):
        persistence = DirectoryPersistence(tmp_path / "out")

        path = await persistence.save(artifact())

        assert path == str(tmp_path / "out" / "shot.png")
        assert (tmp_path / "out" / "shot.png").read_bytes() == b"data"

    @pytest.mark.asyncio
    async def test_automatic_saves_never_overwrite(self, tmp_path):
        persistence = DirectoryPersistence(tmp_path)

        first = await persistence.save(artifact(data=b"one"))
        second = await persistence.save(artifact(data=b"two"))
        third = await persistence.save(artifact(data=b"three"))

        assert first.endswith("shot.png")
        assert second.endswith("shot (1).png")
        assert third.endswith("shot (2).png")
        assert (tmp_path / "shot.png").read_bytes() == b"one"

    @pytest.mark.asyncio
    async def test_interactive_save_writes_exact_name(self, tmp_path):
        persistence = DirectoryPersistence(tmp_path)
        await persistence.save(artifact(data=b"one"))

        path = await persistence.save(artifact(data=b"two"), interactive=True)

        assert path == str(tmp_path / "shot.png")
        assert (tmp_path / "shot.png").read_bytes() == b"two"

    @pytest.mark.asyncio
    async def test_write_failure(self, tmp_path):
        persistence = DirectoryPersistence(tmp_path)

        with patch.object(DirectoryPersistence, "_write", side_effect=PermissionError("read-only")):
            with pytest.raises(DownloadFailedError) as exc_info:
                await persistence.save(artifact())

        assert isinstance(exc_info.value.__cause__, PermissionError)
