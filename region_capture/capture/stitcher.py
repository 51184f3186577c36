"""Segment stitching.

All crop and composite math happens in physical pixels: logical boxes are
scaled by the device pixel ratio before rounding.
"""

import asyncio
import io

import structlog
from PIL import Image, UnidentifiedImageError

from region_capture.capture.errors import StitchingFailedError
from region_capture.capture.models import BoundingBox, CaptureSegment, CropArea, RegionGeometry, StitchStep
from region_capture.capture.performance import BYTES_PER_PIXEL, PerformanceController

logger = structlog.get_logger(__name__)


def clamp_crop_area(crop: CropArea, raster_width: int, raster_height: int) -> CropArea:
    """Clamp a crop to a raster: origin into ``[0, dim - 1]``, size shrunk, at least 1."""
    x = min(max(0, crop.x), max(0, raster_width - 1))
    y = min(max(0, crop.y), max(0, raster_height - 1))
    width = max(1, min(crop.width, raster_width - x))
    height = max(1, min(crop.height, raster_height - y))
    return CropArea(x, y, width, height)


def overlap_height(previous: CaptureSegment, current: CaptureSegment, device_pixel_ratio: float) -> int:
    """Physical rows of ``current`` already present in ``previous``."""
    advanced = current.effective_offset.y - previous.effective_offset.y
    overlap = max(0.0, current.observed_region_box.height - advanced)
    return round(overlap * device_pixel_ratio)


def to_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def decode_raster(raster: bytes) -> Image.Image:
    """Decode a raster into RGBA.

    Raises:
        StitchingFailedError: If the bytes are not a decodable image
    """
    try:
        with Image.open(io.BytesIO(raster)) as img:
            return img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise StitchingFailedError(f"Failed to decode segment raster: {e}") from e


def crop_image(image: Image.Image, box: BoundingBox, device_pixel_ratio: float) -> Image.Image:
    """Crop a logical box out of a decoded raster, clamped to its bounds."""
    crop = clamp_crop_area(
        CropArea(
            x=round(box.x * device_pixel_ratio),
            y=round(box.y * device_pixel_ratio),
            width=round(box.width * device_pixel_ratio),
            height=round(box.height * device_pixel_ratio),
        ),
        image.width,
        image.height,
    )
    return image.crop(crop.to_box())


class SegmentStitcher:
    """Composites captured segments into one seamless raster."""

    def __init__(self, performance: PerformanceController | None = None):
        self.performance = performance or PerformanceController()
        self.log = logger.bind(component="segment_stitcher")

    def crop_to_region(self, raster: bytes, box: BoundingBox, device_pixel_ratio: float) -> bytes:
        """Crop a single raster to a logical box and encode it losslessly."""
        return to_png(crop_image(decode_raster(raster), box, device_pixel_ratio))

    def build_plan(
        self,
        segments: list[CaptureSegment],
        geometry: RegionGeometry,
        device_pixel_ratio: float,
        raster_sizes: list[tuple[int, int]],
    ) -> list[StitchStep]:
        """
        Compute where each segment's crop lands on the canvas.

        Segments whose overlap covers their whole crop, or that arrive after
        the canvas is full, contribute zero rows and are skipped.

        Args:
            segments: Segments in capture order
            geometry: Analyzed region
            device_pixel_ratio: Scale from logical to physical pixels
            raster_sizes: Decoded ``(width, height)`` per segment

        Returns:
            One step per segment, in order
        """
        canvas_width, canvas_height = self.canvas_size(geometry, device_pixel_ratio)
        left_outset = geometry.outset.left
        steps: list[StitchStep] = []
        dest_y = 0

        for index, segment in enumerate(segments):
            box = segment.observed_region_box
            raster_width, raster_height = raster_sizes[index]
            crop = clamp_crop_area(
                CropArea(
                    x=round((box.x - left_outset) * device_pixel_ratio),
                    y=round(box.y * device_pixel_ratio),
                    width=canvas_width,
                    height=round(box.height * device_pixel_ratio),
                ),
                raster_width,
                raster_height,
            )

            overlap = overlap_height(segments[index - 1], segment, device_pixel_ratio) if index > 0 else 0
            overlap = min(overlap, crop.height)
            contributed = max(0, min(crop.height - overlap, canvas_height - dest_y))

            if contributed == 0:
                self.log.debug("Segment fully redundant, skipping", sequence_index=segment.sequence_index)
                steps.append(StitchStep(segment.sequence_index, crop, overlap, 0, dest_y))
                continue

            steps.append(
                StitchStep(
                    sequence_index=segment.sequence_index,
                    crop=CropArea(crop.x, crop.y + overlap, crop.width, contributed),
                    overlap_height=overlap,
                    contributed_height=contributed,
                    dest_y=dest_y,
                )
            )
            dest_y += contributed

        return steps

    @staticmethod
    def canvas_size(geometry: RegionGeometry, device_pixel_ratio: float) -> tuple[int, int]:
        return (
            max(1, round(geometry.bounding_box.width * device_pixel_ratio)),
            max(1, round(geometry.scrollable_total_height * device_pixel_ratio)),
        )

    def _compose(
        self,
        images: list[Image.Image],
        steps: list[StitchStep],
        canvas_size: tuple[int, int],
    ) -> bytes:
        canvas = Image.new("RGBA", canvas_size, (0, 0, 0, 0))
        drawn = 0
        for image, step in zip(images, steps):
            if step.skipped:
                continue
            canvas.paste(image.crop(step.crop.to_box()), (0, step.dest_y))
            drawn = step.dest_y + step.contributed_height
        return to_png(canvas.crop((0, 0, canvas_size[0], drawn)))

    async def _decode_all(self, segments: list[CaptureSegment], geometry: RegionGeometry, device_pixel_ratio: float) -> list[Image.Image]:
        viewport_bytes = (
            geometry.viewport_width * device_pixel_ratio
            * geometry.viewport_height * device_pixel_ratio
            * BYTES_PER_PIXEL
        )

        async def decode(segment: CaptureSegment, index: int) -> Image.Image:
            return await asyncio.to_thread(decode_raster, segment.raster)

        return await self.performance.progressive_batch_process(
            segments,
            decode,
            estimate=lambda segment: viewport_bytes,
        )

    async def stitch(
        self,
        segments: list[CaptureSegment],
        geometry: RegionGeometry,
        device_pixel_ratio: float | None = None,
    ) -> bytes:
        """
        Stitch segments into a single PNG raster.

        Args:
            segments: Segments in capture order
            geometry: Analyzed region
            device_pixel_ratio: Defaults to the geometry's ratio

        Returns:
            PNG bytes of the composited region

        Raises:
            StitchingFailedError: No segments, or a raster failed to decode
        """
        if not segments:
            raise StitchingFailedError("No segments to stitch")

        dpr = device_pixel_ratio or geometry.device_pixel_ratio
        images = await self._decode_all(segments, geometry, dpr)

        if len(segments) == 1:
            box = geometry.expand_to_capture(segments[0].observed_region_box)
            return to_png(crop_image(images[0], box, dpr))

        steps = self.build_plan(segments, geometry, dpr, [image.size for image in images])
        canvas_size = self.canvas_size(geometry, dpr)
        result = await asyncio.to_thread(self._compose, images, steps, canvas_size)

        self.log.info(
            "Segments stitched",
            segments=len(segments),
            skipped=sum(1 for step in steps if step.skipped),
            height=sum(step.contributed_height for step in steps),
            canvas_height=canvas_size[1],
        )
        return result
