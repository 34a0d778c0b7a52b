"""Pillow-backed image codec: metadata reads, transforms and encoding."""

import asyncio
import logging
from io import BytesIO
from typing import Callable, TypeVar

from PIL import ExifTags, Image, ImageEnhance, ImageFilter, ImageOps

from image_relay.api.config import MIME_TYPES
from image_relay.core.errors import TransformFailedError
from image_relay.core.planner import ImageMetadata, TransformPlan

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESAMPLING_KERNELS: dict[str, Image.Resampling] = {
    "lanczos3": Image.Resampling.LANCZOS,
    "mitchell": Image.Resampling.BICUBIC,
}

PILLOW_FORMATS: dict[str, str] = {
    "webp": "WEBP",
    "jpeg": "JPEG",
    "png": "PNG",
    "avif": "AVIF",
}

LOSSY_FORMATS = ("webp", "jpeg", "avif")

CODEC_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)

# EXIF orientations that rotate by 90 or 270 degrees, swapping the axes.
TRANSPOSED_ORIENTATIONS = frozenset({5, 6, 7, 8})


class ImageCodec:
    """Decode, transform and encode images off the event loop."""

    def __init__(self, timeout_seconds: float = 20.0, max_input_pixels: int = 2**24) -> None:
        """Initialize codec with per-operation timeout and pixel ceiling."""
        self.timeout_seconds = timeout_seconds
        self.max_input_pixels = max_input_pixels

    async def read_metadata(self, content: bytes) -> ImageMetadata:
        """
        Read format and dimensions without decoding pixel data.

        Dimensions are reported as displayed, after EXIF orientation.

        Raises:
            TransformFailedError: If the bytes cannot be identified as an image
        """
        return await self._run(lambda: self._read_metadata(content), "metadata read")

    async def transform(self, content: bytes, plan: TransformPlan) -> tuple[bytes, str]:
        """
        Apply a transform plan and encode the result.

        When the source cannot be processed directly it is decoded as-is,
        re-encoded to a PNG intermediate and processed once more.

        Args:
            content: Source image bytes
            plan: Transform plan

        Returns:
            Tuple of (encoded bytes, content type)

        Raises:
            TransformFailedError: If both the direct and the fallback path fail
        """
        return await self._run(lambda: self._transform_with_fallback(content, plan), "transform")

    async def _run(self, func: Callable[[], T], operation: str) -> T:
        # Run Pillow work in thread pool to avoid blocking
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, func), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(f"Codec {operation} timed out after {self.timeout_seconds}s")
            raise TransformFailedError(f"Image {operation} timed out")

    def _read_metadata(self, content: bytes) -> ImageMetadata:
        try:
            with Image.open(BytesIO(content)) as image:
                width, height = image.size
                self._check_pixels(width, height)
                orientation = image.getexif().get(ExifTags.Base.Orientation)
                if orientation in TRANSPOSED_ORIENTATIONS:
                    width, height = height, width
                return ImageMetadata(
                    format=(image.format or "UNKNOWN").upper(),
                    width=width,
                    height=height,
                    mode=image.mode,
                    has_alpha=image.mode in ("RGBA", "LA", "PA")
                    or "transparency" in image.info,
                )
        except TransformFailedError:
            raise
        except CODEC_ERRORS as e:
            logger.error(f"Error reading image metadata: {e}")
            raise TransformFailedError(f"Unsupported or corrupt image: {e}")

    def _transform_with_fallback(self, content: bytes, plan: TransformPlan) -> tuple[bytes, str]:
        try:
            return self._apply(content, plan)
        except TransformFailedError:
            raise
        except CODEC_ERRORS as e:
            logger.warning(f"Direct transform failed ({e}), retrying via PNG intermediate")

        try:
            intermediate = self._to_intermediate(content)
            return self._apply(intermediate, plan)
        except TransformFailedError:
            raise
        except CODEC_ERRORS as e:
            logger.error(f"Fallback transform failed: {e}")
            raise TransformFailedError(f"Failed to process image: {e}")

    def _apply(self, content: bytes, plan: TransformPlan) -> tuple[bytes, str]:
        with Image.open(BytesIO(content)) as source:
            self._check_pixels(*source.size)
            source.load()
            image = ImageOps.exif_transpose(source) or source

            if plan.resize is not None:
                image = self._resize(image, plan)

            if image.mode not in ("RGB", "RGBA", "L"):
                has_alpha = image.mode in ("LA", "PA") or "transparency" in image.info
                image = image.convert("RGBA" if has_alpha else "RGB")

            if plan.sharpen is not None:
                image = self._sharpen(image, plan)

            if plan.modulate is not None:
                image = ImageEnhance.Brightness(image).enhance(plan.modulate.brightness)
                image = ImageEnhance.Color(image).enhance(plan.modulate.saturation)

            encoded = self._encode(image, plan)

        logger.info(
            f"Transformed image to {image.width}x{image.height} "
            f"{plan.encode.format} q={plan.encode.quality} ({len(encoded) / 1024:.1f}KB)"
        )
        return encoded, MIME_TYPES[plan.encode.format]

    def _resize(self, image: Image.Image, plan: TransformPlan) -> Image.Image:
        spec = plan.resize
        assert spec is not None
        size = (spec.width, spec.height)
        if image.size == size:
            return image

        method = RESAMPLING_KERNELS.get(spec.kernel, Image.Resampling.LANCZOS)
        if image.mode == "P":
            image = image.convert("RGBA")

        if spec.fit == "cover":
            return ImageOps.fit(image, size, method=method)
        if spec.fit == "contain":
            return ImageOps.pad(image, size, method=method)
        return image.resize(size, method)

    def _sharpen(self, image: Image.Image, plan: TransformPlan) -> Image.Image:
        spec = plan.sharpen
        assert spec is not None
        # Unsharp mask: sigma as radius, flat strength as percent, jagged as threshold
        unsharp = ImageFilter.UnsharpMask(
            radius=spec.sigma,
            percent=int(round(spec.flat_threshold * 100)),
            threshold=int(round(spec.jagged_threshold)),
        )
        return image.filter(unsharp)

    def _encode(self, image: Image.Image, plan: TransformPlan) -> bytes:
        """Encode with format-specific options."""
        output_format = plan.encode.format
        buffer = BytesIO()

        if output_format == "jpeg" and image.mode == "RGBA":
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.split()[-1])
            image = background

        save_kwargs: dict[str, object] = dict(plan.encode.options)
        if output_format in LOSSY_FORMATS:
            save_kwargs["quality"] = plan.encode.quality

        image.save(buffer, format=PILLOW_FORMATS[output_format], **save_kwargs)
        return buffer.getvalue()

    def _to_intermediate(self, content: bytes) -> bytes:
        """Decode the source as displayed and re-encode it losslessly as PNG."""
        with Image.open(BytesIO(content)) as source:
            self._check_pixels(*source.size)
            source.seek(0)
            frame = (ImageOps.exif_transpose(source) or source).convert("RGBA")
        buffer = BytesIO()
        frame.save(buffer, format="PNG")
        return buffer.getvalue()

    def _check_pixels(self, width: int, height: int) -> None:
        if width * height > self.max_input_pixels:
            raise TransformFailedError(
                f"Image has too many pixels: {width}x{height} "
                f"(max: {self.max_input_pixels})"
            )
