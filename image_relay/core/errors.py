"""Error taxonomy shared by the proxy pipeline."""

from typing import Optional


class ProxyError(Exception):
    """Base class for failures that terminate a proxy request."""

    kind = "InternalError"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: object) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        """Structured, caller-safe representation of the error."""
        payload: dict[str, object] = {"error": self.kind, "message": self.message}
        payload.update(self.extra)
        return payload


class InvalidURLError(ProxyError):
    """Raised when the source URL is missing, malformed or not http(s)."""

    kind = "InvalidURL"
    status_code = 400
    default_message = "Invalid url parameter"


class BlockedHostError(ProxyError):
    """Raised when the source URL targets a loopback, private or local host."""

    kind = "BlockedHost"
    status_code = 400
    default_message = "Host is not allowed"


class InvalidParameterError(ProxyError):
    """Raised when a transform parameter is outside its accepted range."""

    kind = "ValidationError"
    status_code = 400
    default_message = "Invalid transform parameter"


class UnauthorizedError(ProxyError):
    kind = "Unauthorized"
    status_code = 401
    default_message = "A valid API key is required"


class RateLimitedError(ProxyError):
    kind = "RateLimited"
    status_code = 429
    default_message = "Too many requests"


class UpstreamTimeoutError(ProxyError):
    kind = "UpstreamTimeout"
    status_code = 504
    default_message = "Timed out fetching the source image"


class UpstreamNetworkError(ProxyError):
    kind = "UpstreamNetworkError"
    status_code = 502
    default_message = "Network error fetching the source image"


class UpstreamHTTPError(ProxyError):
    """Raised when the origin answers with a non-2xx status."""

    kind = "UpstreamHTTPError"
    status_code = 502

    def __init__(self, upstream_status: int, message: Optional[str] = None) -> None:
        self.upstream_status = upstream_status
        super().__init__(
            message or f"Source responded with status {upstream_status}",
            upstream_status=upstream_status,
        )


class UpstreamNotImageError(ProxyError):
    kind = "UpstreamNotImage"
    status_code = 400
    default_message = "Source URL does not point to an image"


class UpstreamTooLargeError(ProxyError):
    kind = "UpstreamTooLarge"
    status_code = 413
    default_message = "Source image is too large"


class UpstreamEmptyError(ProxyError):
    kind = "UpstreamEmpty"
    status_code = 400
    default_message = "Source image is empty"


class TransformFailedError(ProxyError):
    """Raised when the codec cannot decode, transform or encode an image."""

    kind = "TransformFailed"
    status_code = 500
    default_message = "Failed to process image"


class InternalError(ProxyError):
    pass
