"""Source URL validation and SSRF host blocking."""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from image_relay.core.errors import BlockedHostError, InvalidURLError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTNAMES = frozenset({"localhost"})
BLOCKED_SUFFIXES = (".local", ".localhost")


@dataclass(frozen=True)
class ValidURL:
    """A source URL that passed validation."""

    url: str
    scheme: str
    host: str

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.host}"


class UrlGuard:
    """
    Validate caller-supplied URLs before anything is fetched.

    Hosts are matched literally; no DNS resolution takes place, so a public
    name that resolves to a private address is not caught here.
    """

    def validate(self, raw_url: Optional[str]) -> ValidURL:
        """
        Validate and normalise a source URL.

        Args:
            raw_url: URL as supplied by the caller

        Returns:
            The validated URL

        Raises:
            InvalidURLError: If the URL is missing, malformed or not http(s)
            BlockedHostError: If the host is loopback, private or local
        """
        if raw_url is None or not raw_url.strip():
            raise InvalidURLError("Missing url parameter")

        url = raw_url.strip()
        try:
            parts = urlsplit(url)
            hostname = parts.hostname
            # Accessing port validates it
            parts.port
        except ValueError as e:
            raise InvalidURLError(f"Invalid url parameter: {e}")

        scheme = parts.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            raise InvalidURLError("Only http and https URLs are allowed")

        if not hostname:
            raise InvalidURLError("URL has no host")

        host = hostname.rstrip(".").lower()
        if self.is_blocked_host(host):
            logger.warning(f"Blocked source host: {host}")
            raise BlockedHostError(f"Host is not allowed: {host}")

        netloc_host = parts.netloc.rsplit("@", 1)[-1]
        return ValidURL(url=url, scheme=scheme, host=netloc_host.lower())

    @staticmethod
    def is_blocked_host(host: str) -> bool:
        """Check a lowercase hostname or IP literal against the block list."""
        if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_SUFFIXES):
            return True

        try:
            address = ipaddress.ip_address(host.strip("[]"))
        except ValueError:
            return False

        mapped = getattr(address, "ipv4_mapped", None)
        if mapped is not None:
            address = mapped

        return (
            address.is_loopback
            or address.is_link_local
            or address.is_private
            or address.is_unspecified
        )
