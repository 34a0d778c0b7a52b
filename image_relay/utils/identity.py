"""Caller identity detection utilities."""

import hmac
import logging
from dataclasses import dataclass
from typing import Iterable, Literal, Optional

from fastapi import Request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Who is calling: an API key or a client IP, possibly privileged."""

    kind: Literal["key", "ip"]
    value: str
    unlimited: bool = False

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.value}"


class IdentityResolver:
    """
    Resolve the caller identity from request headers and query.

    Client IP headers (X-Forwarded-For, X-Real-IP, CF-Connecting-IP) are set
    by whoever sends the request, so they are only read when the socket peer
    is a listed trusted proxy. Otherwise any client could claim an admin IP or
    a fresh rate-limit identity by sending the header itself.
    """

    def __init__(
        self,
        admin_ips: Optional[Iterable[str]] = None,
        api_keys: Optional[Iterable[str]] = None,
        trusted_proxies: Optional[Iterable[str]] = None,
    ) -> None:
        self.admin_ips = frozenset(admin_ips or ())
        self.api_keys = tuple(api_keys or ())
        self.trusted_proxies = frozenset(trusted_proxies or ())

    def resolve(self, request: Request) -> CallerIdentity:
        """
        Resolve the identity for a request.

        Priority:
        1. A valid API key (`key` query parameter or X-API-Key header)
        2. Client IP, privileged when listed as an admin IP

        Args:
            request: FastAPI request object

        Returns:
            Caller identity
        """
        api_key = request.query_params.get("key") or request.headers.get("x-api-key")
        if api_key and self.is_valid_key(api_key):
            return CallerIdentity(kind="key", value=api_key, unlimited=True)

        if api_key:
            logger.info("Ignoring invalid API key, falling back to client IP")

        client_ip = self.detect_client_ip(request)
        return CallerIdentity(
            kind="ip", value=client_ip, unlimited=client_ip in self.admin_ips
        )

    def is_valid_key(self, api_key: str) -> bool:
        candidate = api_key.encode("utf-8")
        return any(
            hmac.compare_digest(candidate, known.encode("utf-8"))
            for known in self.api_keys
        )

    def detect_client_ip(self, request: Request) -> str:
        """
        Detect client IP, reading proxy headers only behind a trusted proxy.

        Args:
            request: FastAPI request object

        Returns:
            Client IP address, or 'unknown'
        """
        peer = request.client.host if request.client and request.client.host else None
        if peer is None or peer not in self.trusted_proxies:
            return peer or "unknown"

        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first

        for header in ("x-real-ip", "cf-connecting-ip"):
            value = request.headers.get(header)
            if value:
                return value.strip()

        return peer
