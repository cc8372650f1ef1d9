"""
Credential Provider - short-lived, audience-scoped access tokens.

Phase 2 talks to data planes (the SQL server) that need a bearer token for
a specific audience. The provider fetches tokens from a TokenSource, caches
them per audience until shortly before expiry, and never lets the token
value reach a log line, a repr, or a persisted report.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Protocol, runtime_checkable

from provchestra.azure_cli import AzureCli
from provchestra.errors import AuthenticationError, AzureCliError

logger = logging.getLogger(__name__)

SQL_AUDIENCE = "https://database.windows.net/"
MANAGEMENT_AUDIENCE = "https://management.azure.com/"


@dataclass(frozen=True)
class CredentialToken:
    """
    An access token for one audience.

    The value is excluded from repr and from to_dict().
    """
    audience: str
    value: str = field(repr=False)
    expires_at: float

    def expires_within(self, seconds: float, now: float) -> bool:
        return self.expires_at - seconds <= now

    def to_dict(self) -> dict:
        return {"audience": self.audience, "expires_at": self.expires_at}


@runtime_checkable
class TokenSource(Protocol):
    """
    Protocol for token acquisition.

    Implementations raise AuthenticationError when the identity is denied.
    """

    def fetch(self, audience: str) -> CredentialToken:
        ...


class StaticTokenSource:
    """Token source returning a fixed token; for tests and dry runs."""

    def __init__(self, value: str = "static-token", lifetime_seconds: float = 3600.0,
                 clock: Callable[[], float] = time.time, deny: bool = False):
        self._value = value
        self._lifetime_seconds = lifetime_seconds
        self._clock = clock
        self._deny = deny
        self.fetch_count = 0

    def fetch(self, audience: str) -> CredentialToken:
        self.fetch_count += 1
        if self._deny:
            raise AuthenticationError(f"Token request for {audience} was denied", audience=audience)
        return CredentialToken(audience, self._value, self._clock() + self._lifetime_seconds)


class AzureCliTokenSource:
    """Token source backed by `az account get-access-token`."""

    def __init__(self, cli: AzureCli):
        self.cli = cli

    def fetch(self, audience: str) -> CredentialToken:
        try:
            payload = self.cli.run(["account", "get-access-token", "--resource", audience])
        except AzureCliError as e:
            raise AuthenticationError(
                f"Could not acquire a token for {audience} (exit {e.returncode})",
                audience=audience,
            ) from e

        if not payload or "accessToken" not in payload:
            raise AuthenticationError(f"No access token returned for {audience}", audience=audience)
        return CredentialToken(audience, payload["accessToken"], _parse_expiry(payload))


def _parse_expiry(payload: dict) -> float:
    # Newer az versions return expires_on (epoch seconds); older ones only expiresOn
    if payload.get("expires_on") is not None:
        return float(payload["expires_on"])
    expires = payload.get("expiresOn")
    if expires:
        return datetime.fromisoformat(str(expires)).timestamp()
    return time.time() + 300.0


class CredentialProvider:
    """
    Cache tokens per audience and refresh them before they expire.

    Args:
        source: TokenSource used to fetch new tokens
        refresh_margin_seconds: Refetch when a cached token expires within this margin
        clock: Wall-clock time source (epoch seconds)
    """

    def __init__(
        self,
        source: TokenSource,
        refresh_margin_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._cache: dict[str, CredentialToken] = {}

    def acquire(self, audience: str) -> CredentialToken:
        """
        Return a valid token for the audience.

        Raises:
            AuthenticationError: If the source denies the request
        """
        cached = self._cache.get(audience)
        if cached is not None and not cached.expires_within(self.refresh_margin_seconds, self._clock()):
            return cached

        logger.info(f"Acquiring token for {audience}")
        token = self.source.fetch(audience)
        if token.expires_within(0, self._clock()):
            raise AuthenticationError(f"Token for {audience} is already expired", audience=audience)
        self._cache[audience] = token
        return token

    def invalidate(self, audience: Optional[str] = None) -> None:
        """Drop the cached token for one audience, or all of them."""
        if audience is None:
            self._cache.clear()
        else:
            self._cache.pop(audience, None)
