"""Transform planning driven by request parameters and image heuristics."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from pydantic import ValidationError

from image_relay.api.config import (
    DEFAULT_FIT,
    DEFAULT_SHARPEN_LEVEL,
    FORMAT_QUALITY_BOUNDS,
    PHOTO_DEFAULT_QUALITY,
    TEXT_DEFAULT_QUALITY,
    TEXT_MIN_QUALITY,
)
from image_relay.api.models import TransformRequest
from image_relay.core.errors import InvalidParameterError, TransformFailedError
from image_relay.utils.identity import CallerIdentity

logger = logging.getLogger(__name__)

LOSSLESS_SOURCE_FORMATS = frozenset({"PNG", "GIF", "BMP", "TIFF"})
SOURCE_TO_OUTPUT_FORMAT: dict[str, str] = {
    "JPEG": "jpeg",
    "PNG": "png",
    "WEBP": "webp",
    "AVIF": "avif",
}

SMALL_IMAGE_SCALE = 0.7


class ContentClass(str, Enum):
    TEXT = "text"
    PHOTO = "photo"


class SharpenLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ImageMetadata:
    """Source image characteristics read by the codec."""

    format: str
    width: int
    height: int
    mode: str = "RGB"
    has_alpha: bool = False

    @property
    def aspect_ratio(self) -> float:
        return max(self.width / self.height, self.height / self.width)


@dataclass(frozen=True)
class ResizeSpec:
    width: int
    height: int
    kernel: str
    fit: str


@dataclass(frozen=True)
class SharpenSpec:
    sigma: float
    flat_threshold: float
    jagged_threshold: float


@dataclass(frozen=True)
class ModulateSpec:
    brightness: float
    saturation: float


@dataclass(frozen=True)
class EncodeSpec:
    format: str
    quality: int
    options: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class TransformPlan:
    """Everything the codec needs to produce the output image."""

    encode: EncodeSpec
    content_class: ContentClass
    resize: Optional[ResizeSpec] = None
    sharpen: Optional[SharpenSpec] = None
    modulate: Optional[ModulateSpec] = None


# Ordered low -> high. Text profiles stay gentle to keep glyph edges intact.
SHARPEN_PROFILES: dict[tuple[ContentClass, SharpenLevel], SharpenSpec] = {
    (ContentClass.TEXT, SharpenLevel.LOW): SharpenSpec(0.25, 0.25, 0.08),
    (ContentClass.TEXT, SharpenLevel.MEDIUM): SharpenSpec(0.35, 0.35, 0.12),
    (ContentClass.TEXT, SharpenLevel.HIGH): SharpenSpec(0.5, 0.5, 0.2),
    (ContentClass.PHOTO, SharpenLevel.LOW): SharpenSpec(0.5, 1.0, 0.5),
    (ContentClass.PHOTO, SharpenLevel.MEDIUM): SharpenSpec(1.0, 1.0, 1.0),
    (ContentClass.PHOTO, SharpenLevel.HIGH): SharpenSpec(1.5, 1.5, 2.0),
}

RESIZE_KERNELS: dict[ContentClass, str] = {
    ContentClass.TEXT: "mitchell",
    ContentClass.PHOTO: "lanczos3",
}

HIGH_PHOTO_MODULATE = ModulateSpec(brightness=1.02, saturation=1.05)

QUERY_ALIASES: dict[str, tuple[str, ...]] = {
    "width": ("w", "width"),
    "height": ("h", "height"),
    "quality": ("q", "quality"),
    "fit": ("fit",),
    "output_format": ("format",),
    "sharpen": ("sharpen", "sharp"),
    "sharpen_level": ("sharpenLevel", "sharpLevel"),
    "text_hint": ("text",),
}


class TransformPlanner:
    """Derive deterministic transform plans from requests and metadata."""

    def __init__(
        self,
        text_aspect_ratio: float = 2.0,
        small_image_px: int = 300,
        always_sharpen: bool = False,
        default_output_format: str = "webp",
    ) -> None:
        """Initialize planner with deployment heuristics."""
        self.text_aspect_ratio = text_aspect_ratio
        self.small_image_px = small_image_px
        self.always_sharpen = always_sharpen
        self.default_output_format = default_output_format

    @property
    def feature_flags(self) -> dict[str, object]:
        """Deployment flags that change output bytes."""
        return {
            "always_sharpen": self.always_sharpen,
            "default_output_format": self.default_output_format,
            "small_image_px": self.small_image_px,
            "text_aspect_ratio": self.text_aspect_ratio,
        }

    def build_request(
        self, query: Mapping[str, str], source_url: str, caller: CallerIdentity
    ) -> TransformRequest:
        """
        Validate raw query values into a transform request.

        Args:
            query: Raw query parameters
            source_url: Already validated source URL
            caller: Resolved caller identity

        Returns:
            Immutable transform request

        Raises:
            InvalidParameterError: If any parameter is out of range or unknown
        """
        values: dict[str, object] = {"source_url": source_url, "caller": caller}
        query_names: dict[str, str] = {}
        for field_name, names in QUERY_ALIASES.items():
            for name in names:
                raw = query.get(name)
                if raw is not None and raw.strip() != "":
                    values[field_name] = raw.strip()
                    query_names[field_name] = name
                    break

        try:
            return TransformRequest.model_validate(values)
        except ValidationError as e:
            error = e.errors()[0]
            location = ".".join(str(part) for part in error["loc"]) or "sharpen"
            parameter = query_names.get(location, location)
            raise InvalidParameterError(
                f"Invalid parameter {parameter}: {error['msg']}", parameter=parameter
            )

    def classify(self, request: TransformRequest, metadata: ImageMetadata) -> ContentClass:
        """Classify a source as text/line-art or photographic content."""
        if request.text_hint:
            return ContentClass.TEXT
        if metadata.format.upper() in LOSSLESS_SOURCE_FORMATS or metadata.mode == "P":
            return ContentClass.TEXT
        if metadata.aspect_ratio > self.text_aspect_ratio:
            return ContentClass.TEXT
        return ContentClass.PHOTO

    def plan(self, request: TransformRequest, metadata: ImageMetadata) -> TransformPlan:
        """
        Build the transform plan for a request.

        Pure function: identical inputs always give an identical plan.

        Args:
            request: Validated transform request
            metadata: Source image metadata

        Returns:
            Transform plan
        """
        self._check_ranges(request)
        if metadata.width <= 0 or metadata.height <= 0:
            raise TransformFailedError("Source image has no pixels")

        content_class = self.classify(request, metadata)

        resize = None
        if request.width is not None or request.height is not None:
            resize = self._plan_resize(request, metadata, content_class)

        sharpen = None
        modulate = None
        level = self._sharpen_level(request)
        if level is not None:
            sharpen = self._plan_sharpen(content_class, level, metadata)
            if content_class is ContentClass.PHOTO and level is SharpenLevel.HIGH:
                modulate = HIGH_PHOTO_MODULATE

        encode = self._plan_encode(request, metadata, content_class)

        plan = TransformPlan(
            encode=encode,
            content_class=content_class,
            resize=resize,
            sharpen=sharpen,
            modulate=modulate,
        )
        logger.debug(f"Planned transform: {plan}")
        return plan

    def _check_ranges(self, request: TransformRequest) -> None:
        try:
            TransformRequest.model_validate(request.model_dump())
        except ValidationError as e:
            raise InvalidParameterError(f"Invalid transform request: {e.errors()[0]['msg']}")

    def _sharpen_level(self, request: TransformRequest) -> Optional[SharpenLevel]:
        if request.sharpen or request.sharpen_level is not None:
            return SharpenLevel(request.sharpen_level or DEFAULT_SHARPEN_LEVEL)
        if self.always_sharpen:
            return SharpenLevel(DEFAULT_SHARPEN_LEVEL)
        return None

    def _plan_resize(
        self,
        request: TransformRequest,
        metadata: ImageMetadata,
        content_class: ContentClass,
    ) -> ResizeSpec:
        """Compute target size, keeping aspect ratio and never enlarging."""
        fit = request.fit or DEFAULT_FIT
        src_w, src_h = metadata.width, metadata.height

        if request.width is None or request.height is None:
            if request.width is not None:
                scale = min(request.width, src_w) / src_w
            else:
                scale = min(request.height, src_h) / src_h  # type: ignore[arg-type]
            width, height = self._scaled(src_w, src_h, scale)

        elif fit in ("inside", "outside"):
            ratios = (request.width / src_w, request.height / src_h)
            scale = min(ratios) if fit == "inside" else max(ratios)
            width, height = self._scaled(src_w, src_h, min(scale, 1.0))

        else:
            width = min(request.width, src_w)
            height = min(request.height, src_h)

        return ResizeSpec(
            width=width,
            height=height,
            kernel=RESIZE_KERNELS[content_class],
            fit=fit,
        )

    @staticmethod
    def _scaled(src_w: int, src_h: int, scale: float) -> tuple[int, int]:
        return max(1, round(src_w * scale)), max(1, round(src_h * scale))

    def _plan_sharpen(
        self, content_class: ContentClass, level: SharpenLevel, metadata: ImageMetadata
    ) -> SharpenSpec:
        profile = SHARPEN_PROFILES[(content_class, level)]
        if min(metadata.width, metadata.height) < self.small_image_px:
            profile = SharpenSpec(
                sigma=round(profile.sigma * SMALL_IMAGE_SCALE, 3),
                flat_threshold=round(profile.flat_threshold * SMALL_IMAGE_SCALE, 3),
                jagged_threshold=round(profile.jagged_threshold * SMALL_IMAGE_SCALE, 3),
            )
        return profile

    def _plan_encode(
        self,
        request: TransformRequest,
        metadata: ImageMetadata,
        content_class: ContentClass,
    ) -> EncodeSpec:
        output_format = request.output_format or self._default_format(metadata)

        if request.quality is not None:
            quality = request.quality
        elif content_class is ContentClass.TEXT:
            quality = TEXT_DEFAULT_QUALITY
        else:
            quality = PHOTO_DEFAULT_QUALITY

        if content_class is ContentClass.TEXT:
            quality = max(quality, TEXT_MIN_QUALITY)

        low, high = FORMAT_QUALITY_BOUNDS[output_format]
        quality = max(low, min(high, quality))

        return EncodeSpec(
            format=output_format,
            quality=quality,
            options=self._format_options(output_format, content_class),
        )

    def _default_format(self, metadata: ImageMetadata) -> str:
        if self.default_output_format == "source":
            return SOURCE_TO_OUTPUT_FORMAT.get(metadata.format.upper(), "webp")
        return self.default_output_format

    @staticmethod
    def _format_options(output_format: str, content_class: ContentClass) -> dict[str, object]:
        if output_format == "webp":
            return {"method": 6}
        if output_format == "jpeg":
            return {
                "optimize": True,
                "progressive": True,
                "subsampling": "4:4:4" if content_class is ContentClass.TEXT else "4:2:0",
            }
        if output_format == "png":
            return {"optimize": True, "compress_level": 9}
        return {"speed": 6}
