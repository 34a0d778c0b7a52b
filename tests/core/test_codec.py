"""Tests for the Pillow image codec."""

from io import BytesIO

import pytest
from conftest import encode_image
from PIL import ExifTags, Image

from image_relay.core.codec import ImageCodec
from image_relay.core.errors import TransformFailedError
from image_relay.core.planner import ImageMetadata, TransformPlan, TransformPlanner
from image_relay.utils.identity import CallerIdentity

SOURCE_URL = "https://images.example.com/a.jpg"

# EXIF orientation 6: stored landscape, displayed rotated 90 degrees clockwise.
ROTATE_90_CW = 6


@pytest.fixture
def make_plan(planner: TransformPlanner, anonymous_caller: CallerIdentity):
    def _make_plan(metadata: ImageMetadata, **query: str) -> TransformPlan:
        request = planner.build_request(query, SOURCE_URL, anonymous_caller)
        return planner.plan(request, metadata)

    return _make_plan


@pytest.fixture
def rotated_jpeg(sample_image: Image.Image) -> bytes:
    """Encode the 800x600 sample with an orientation tag that displays it as 600x800."""
    exif = Image.Exif()
    exif[ExifTags.Base.Orientation] = ROTATE_90_CW
    return encode_image(sample_image, "JPEG", quality=90, exif=exif.tobytes())


class TestReadMetadata:
    """Test metadata reads."""

    @pytest.mark.asyncio
    async def test_jpeg_metadata(self, image_codec: ImageCodec, sample_jpeg: bytes) -> None:
        metadata = await image_codec.read_metadata(sample_jpeg)

        assert metadata.format == "JPEG"
        assert (metadata.width, metadata.height) == (800, 600)
        assert metadata.mode == "RGB"
        assert metadata.has_alpha is False

    @pytest.mark.asyncio
    async def test_png_alpha_metadata(
        self, image_codec: ImageCodec, sample_png_with_transparency: bytes
    ) -> None:
        metadata = await image_codec.read_metadata(sample_png_with_transparency)

        assert metadata.format == "PNG"
        assert (metadata.width, metadata.height) == (400, 300)
        assert metadata.has_alpha is True

    @pytest.mark.asyncio
    async def test_garbage_is_rejected(self, image_codec: ImageCodec) -> None:
        with pytest.raises(TransformFailedError):
            await image_codec.read_metadata(b"definitely not an image")

    @pytest.mark.asyncio
    async def test_pixel_ceiling(self, sample_jpeg: bytes) -> None:
        """Test sources over the pixel ceiling are refused before decoding."""
        codec = ImageCodec(max_input_pixels=100_000)

        with pytest.raises(TransformFailedError) as exc_info:
            await codec.read_metadata(sample_jpeg)

        assert "too many pixels" in exc_info.value.message


class TestTransform:
    """Test transform pipeline output."""

    @pytest.mark.asyncio
    async def test_resize_to_webp(
        self, image_codec: ImageCodec, sample_jpeg: bytes, make_plan
    ) -> None:
        """Test a photo is resized keeping aspect and re-encoded as WebP."""
        metadata = await image_codec.read_metadata(sample_jpeg)
        plan = make_plan(metadata, w="400")

        content, content_type = await image_codec.transform(sample_jpeg, plan)

        assert content_type == "image/webp"
        with Image.open(BytesIO(content)) as result:
            assert result.format == "WEBP"
            assert result.size == (400, 300)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fit", ["cover", "contain", "fill"])
    async def test_box_fits_produce_exact_size(
        self, image_codec: ImageCodec, sample_jpeg: bytes, make_plan, fit: str
    ) -> None:
        metadata = await image_codec.read_metadata(sample_jpeg)
        plan = make_plan(metadata, w="300", h="300", fit=fit, format="png")

        content, content_type = await image_codec.transform(sample_jpeg, plan)

        assert content_type == "image/png"
        with Image.open(BytesIO(content)) as result:
            assert result.size == (300, 300)

    @pytest.mark.asyncio
    async def test_jpeg_output_flattens_transparency(
        self, image_codec: ImageCodec, sample_png_with_transparency: bytes, make_plan
    ) -> None:
        """Test transparent areas become white when encoding to JPEG."""
        metadata = await image_codec.read_metadata(sample_png_with_transparency)
        plan = make_plan(metadata, format="jpeg")

        content, content_type = await image_codec.transform(sample_png_with_transparency, plan)

        assert content_type == "image/jpeg"
        with Image.open(BytesIO(content)) as result:
            assert result.mode == "RGB"
            corner = result.getpixel((5, 5))
            center = result.getpixel((200, 150))
        assert all(channel >= 245 for channel in corner)
        assert all(channel <= 60 for channel in center)

    @pytest.mark.asyncio
    async def test_webp_keeps_alpha(
        self, image_codec: ImageCodec, sample_png_with_transparency: bytes, make_plan
    ) -> None:
        metadata = await image_codec.read_metadata(sample_png_with_transparency)
        plan = make_plan(metadata, w="200")

        content, _ = await image_codec.transform(sample_png_with_transparency, plan)

        with Image.open(BytesIO(content)) as result:
            assert result.mode == "RGBA"
            assert result.size == (200, 150)

    @pytest.mark.asyncio
    async def test_quality_changes_size(
        self, image_codec: ImageCodec, sample_jpeg: bytes, make_plan
    ) -> None:
        metadata = await image_codec.read_metadata(sample_jpeg)

        low, _ = await image_codec.transform(sample_jpeg, make_plan(metadata, q="20", format="jpeg"))
        high, _ = await image_codec.transform(sample_jpeg, make_plan(metadata, q="85", format="jpeg"))

        assert len(low) < len(high)

    @pytest.mark.asyncio
    async def test_sharpen_and_modulate(
        self, image_codec: ImageCodec, sample_jpeg: bytes, make_plan
    ) -> None:
        metadata = await image_codec.read_metadata(sample_jpeg)
        plan = make_plan(metadata, w="400", sharpen="high", format="png")
        assert plan.modulate is not None

        content, _ = await image_codec.transform(sample_jpeg, plan)

        with Image.open(BytesIO(content)) as result:
            assert result.size == (400, 300)

    @pytest.mark.asyncio
    async def test_palette_source(self, image_codec: ImageCodec, make_plan) -> None:
        palette = Image.new("RGB", (120, 80), color=(10, 200, 30)).convert("P")
        source = encode_image(palette, "GIF")
        metadata = await image_codec.read_metadata(source)
        plan = make_plan(metadata, w="60", sharpen="low")

        content, content_type = await image_codec.transform(source, plan)

        assert content_type == "image/webp"
        with Image.open(BytesIO(content)) as result:
            assert result.size == (60, 40)

    @pytest.mark.asyncio
    async def test_fallback_path_recovers(
        self,
        image_codec: ImageCodec,
        sample_jpeg: bytes,
        make_plan,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a direct-path failure is retried once via a PNG intermediate."""
        metadata = await image_codec.read_metadata(sample_jpeg)
        plan = make_plan(metadata, w="200")
        original_apply = image_codec._apply
        seen_formats = []

        def flaky_apply(content: bytes, transform_plan: TransformPlan):
            with Image.open(BytesIO(content)) as opened:
                seen_formats.append(opened.format)
            if len(seen_formats) == 1:
                raise OSError("unsupported feature")
            return original_apply(content, transform_plan)

        monkeypatch.setattr(image_codec, "_apply", flaky_apply)

        content, content_type = await image_codec.transform(sample_jpeg, plan)

        assert seen_formats == ["JPEG", "PNG"]
        assert content_type == "image/webp"
        with Image.open(BytesIO(content)) as result:
            assert result.size == (200, 150)

    @pytest.mark.asyncio
    async def test_truncated_source_fails(
        self, image_codec: ImageCodec, sample_jpeg: bytes, make_plan
    ) -> None:
        """Test a source broken on both paths surfaces as TransformFailed."""
        metadata = await image_codec.read_metadata(sample_jpeg)
        plan = make_plan(metadata, w="200")

        with pytest.raises(TransformFailedError):
            await image_codec.transform(sample_jpeg[: len(sample_jpeg) // 3], plan)


class TestExifOrientation:
    """Test sources whose EXIF orientation swaps width and height."""

    @pytest.mark.asyncio
    async def test_metadata_reports_displayed_size(
        self, image_codec: ImageCodec, rotated_jpeg: bytes
    ) -> None:
        metadata = await image_codec.read_metadata(rotated_jpeg)
        assert (metadata.width, metadata.height) == (600, 800)

    @pytest.mark.asyncio
    async def test_resize_keeps_displayed_aspect(
        self, image_codec: ImageCodec, rotated_jpeg: bytes, make_plan
    ) -> None:
        """Test a portrait phone photo is not squashed into landscape."""
        metadata = await image_codec.read_metadata(rotated_jpeg)
        plan = make_plan(metadata, w="300")

        content, _ = await image_codec.transform(rotated_jpeg, plan)

        assert plan.resize is not None
        assert (plan.resize.width, plan.resize.height) == (300, 400)
        with Image.open(BytesIO(content)) as result:
            assert result.size == (300, 400)

    @pytest.mark.asyncio
    async def test_fallback_path_keeps_orientation(
        self,
        image_codec: ImageCodec,
        rotated_jpeg: bytes,
        make_plan,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        metadata = await image_codec.read_metadata(rotated_jpeg)
        plan = make_plan(metadata, w="300")
        original_apply = image_codec._apply
        calls = []

        def flaky_apply(content: bytes, transform_plan: TransformPlan):
            calls.append(len(content))
            if len(calls) == 1:
                raise OSError("unsupported feature")
            return original_apply(content, transform_plan)

        monkeypatch.setattr(image_codec, "_apply", flaky_apply)

        content, _ = await image_codec.transform(rotated_jpeg, plan)

        assert len(calls) == 2
        with Image.open(BytesIO(content)) as result:
            assert result.size == (300, 400)
