"""Output encoding and filename generation."""

import io
from datetime import UTC, datetime

import structlog
from PIL import Image, UnidentifiedImageError

from region_capture.capture.errors import ProcessingError
from region_capture.capture.models import EncodedOutput, EncodeOptions, ImageFormat

logger = structlog.get_logger(__name__)

JPEG_BACKGROUND = (255, 255, 255)

# Suggested quality per content type and format
CONTENT_QUALITY: dict[str, dict[ImageFormat, float]] = {
    "photo": {ImageFormat.PNG: 0.95, ImageFormat.JPEG: 0.85},
    "text": {ImageFormat.PNG: 1.0, ImageFormat.JPEG: 0.95},
    "mixed": {ImageFormat.PNG: 0.9, ImageFormat.JPEG: 0.8},
    "chart": {ImageFormat.PNG: 1.0, ImageFormat.JPEG: 0.9},
}

OPTIMIZE_ITERATIONS = 8
OPTIMIZE_SIZE_MARGIN = 1.1


def pillow_quality(quality: float) -> int:
    """Map a ``[0, 1]`` quality onto Pillow's JPEG scale (1-100)."""
    return min(100, max(1, int(round(quality * 100))))


def generate_filename(
    template: str,
    image_format: ImageFormat | str,
    now: datetime | None = None,
) -> str:
    """
    Expand a filename template.

    Recognized placeholders are ``{timestamp}`` (``YYYY-MM-DDTHH-MM-SS``),
    ``{date}`` (``YYYY-MM-DD``), ``{time}`` (``HH-MM-SS``) and ``{format}``.
    Other braces are left as they are. The extension for the format is
    appended when missing.
    """
    image_format = ImageFormat(image_format)
    now = now or datetime.now(UTC)

    filename = (
        template.replace("{timestamp}", now.strftime("%Y-%m-%dT%H-%M-%S"))
        .replace("{date}", now.strftime("%Y-%m-%d"))
        .replace("{time}", now.strftime("%H-%M-%S"))
        .replace("{format}", image_format.value)
    )

    lowered = filename.lower()
    if image_format == ImageFormat.JPEG:
        if not lowered.endswith((".jpg", ".jpeg")):
            filename += ".jpg"
    elif not lowered.endswith(".png"):
        filename += ".png"
    return filename


def content_optimized_quality(content_type: str, image_format: ImageFormat | str) -> float:
    """Suggested quality for a content type (photo, text, mixed, chart)."""
    table = CONTENT_QUALITY.get(content_type, CONTENT_QUALITY["mixed"])
    return table[ImageFormat(image_format)]


class FormatEncoder:
    """Encodes stitched rasters as PNG or JPEG."""

    def __init__(self):
        self.log = logger.bind(component="format_encoder")

    @staticmethod
    def _open(raster: bytes) -> Image.Image:
        try:
            with Image.open(io.BytesIO(raster)) as img:
                img.load()
                return img.copy()
        except (UnidentifiedImageError, OSError) as e:
            raise ProcessingError(f"Failed to decode raster for encoding: {e}") from e

    @staticmethod
    def _encode_image(image: Image.Image, image_format: ImageFormat, quality: float) -> bytes:
        buffer = io.BytesIO()
        if image_format == ImageFormat.JPEG:
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, JPEG_BACKGROUND)
            background.paste(rgba, mask=rgba.getchannel("A"))
            background.save(buffer, format="JPEG", quality=pillow_quality(quality))
        else:
            image.save(buffer, format="PNG")
        return buffer.getvalue()

    def encode(
        self,
        raster: bytes,
        options: EncodeOptions | None = None,
        now: datetime | None = None,
    ) -> EncodedOutput:
        """
        Encode a raster.

        PNG keeps the alpha channel and ignores quality. JPEG is painted
        onto an opaque white background first, then encoded at quality.

        Args:
            raster: Lossless source raster
            options: Format, quality and filename template
            now: Timestamp for the filename

        Returns:
            The encoded artifact

        Raises:
            ProcessingError: If the raster cannot be decoded
        """
        options = options or EncodeOptions()
        image = self._open(raster)
        data = self._encode_image(image, options.format, options.quality)
        filename = generate_filename(options.filename_template, options.format, now)

        self.log.info(
            "Raster encoded",
            format=options.format.value,
            quality=options.quality,
            width=image.width,
            height=image.height,
            size_bytes=len(data),
        )
        return EncodedOutput(
            data=data,
            format=options.format,
            quality=options.quality,
            filename=filename,
            width=image.width,
            height=image.height,
        )

    def optimize_quality(
        self,
        raster: bytes,
        target_kb: float,
        image_format: ImageFormat | str = ImageFormat.JPEG,
    ) -> float:
        """
        Binary search the highest quality whose output fits a size budget.

        A result may exceed ``target_kb`` by up to 10%. Returns the lower
        search bound when nothing fits.
        """
        image_format = ImageFormat(image_format)
        image = self._open(raster)
        low = 0.5 if image_format == ImageFormat.JPEG else 0.7
        high = 1.0
        best = low

        for _ in range(OPTIMIZE_ITERATIONS):
            quality = (low + high) / 2
            size_kb = len(self._encode_image(image, image_format, quality)) / 1024
            if size_kb <= target_kb * OPTIMIZE_SIZE_MARGIN:
                best = quality
                low = quality
            else:
                high = quality

        self.log.debug("Quality optimized", format=image_format.value, target_kb=target_kb, quality=best)
        return best
