"""API request and response models."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from image_relay.api.config import FORMAT_ALIASES, MAX_DIMENSION_PX, SHARPEN_LEVELS
from image_relay.utils.identity import CallerIdentity

BOOLEAN_STRINGS = {"true": True, "false": False}


class TransformRequest(BaseModel):
    """Validated, immutable parameters of one proxy request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_url: str = Field(..., description="Absolute http(s) URL of the source image")
    width: Optional[int] = Field(
        default=None, ge=1, le=MAX_DIMENSION_PX, description="Target width in pixels"
    )
    height: Optional[int] = Field(
        default=None, ge=1, le=MAX_DIMENSION_PX, description="Target height in pixels"
    )
    quality: Optional[int] = Field(
        default=None, ge=1, le=100, description="Output quality (1-100)"
    )
    fit: Optional[Literal["contain", "cover", "fill", "inside", "outside"]] = Field(
        default=None, description="Resize fit mode; unset behaves as 'inside'"
    )
    output_format: Optional[Literal["webp", "jpeg", "png", "avif"]] = Field(
        default=None, description="Output image format"
    )
    sharpen: bool = Field(default=False, description="Apply sharpening")
    sharpen_level: Optional[Literal["low", "medium", "high"]] = Field(
        default=None, description="Sharpening strength"
    )
    text_hint: Optional[bool] = Field(
        default=None, description="Treat the image as text or line art"
    )
    caller: CallerIdentity

    @field_validator("fit", "output_format", "sharpen_level", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return FORMAT_ALIASES.get(value, value)
        return value

    @field_validator("text_hint", mode="before")
    @classmethod
    def _strict_boolean(cls, value: Any) -> Any:
        if isinstance(value, str):
            if value.lower() not in BOOLEAN_STRINGS:
                raise ValueError("must be 'true' or 'false'")
            return BOOLEAN_STRINGS[value.lower()]
        return value

    @model_validator(mode="before")
    @classmethod
    def _sharpen_shorthand(cls, data: Any) -> Any:
        """Accept `sharpen=<level>` as shorthand for sharpen=true plus a level."""
        if not isinstance(data, dict):
            return data
        sharpen = data.get("sharpen")
        if not isinstance(sharpen, str):
            return data

        value = sharpen.strip().lower()
        data = dict(data)
        if value in SHARPEN_LEVELS:
            data["sharpen"] = True
            data.setdefault("sharpen_level", value)
        elif value in BOOLEAN_STRINGS:
            data["sharpen"] = BOOLEAN_STRINGS[value]
        else:
            raise ValueError("sharpen must be 'true', 'false', 'low', 'medium' or 'high'")
        return data

    @property
    def wants_transform(self) -> bool:
        """Whether any parameter asks for the image to be re-encoded."""
        return (
            self.width is not None
            or self.height is not None
            or self.quality is not None
            or self.output_format is not None
            or self.sharpen
            or self.sharpen_level is not None
        )

    def signature_fields(self) -> dict[str, Any]:
        """Every output-affecting field, with unset values kept as None."""
        return self.model_dump(exclude={"caller"})


class ErrorResponse(BaseModel):
    """Structured error returned for every failed request."""

    error: str = Field(..., description="Error kind, e.g. BlockedHost or RateLimited")
    message: str = Field(..., description="Caller-safe description of the failure")
    detail: Optional[str] = Field(
        default=None, description="Diagnostic detail, only when enabled"
    )
