"""
Short-lived installation credentials for the GitHub API.

The broker holds the App's long-lived private key and exchanges a signed
assertion (an RS256 JWT) for an installation access token:

1. Mint a JWT with ``iat`` 60 seconds in the past (clock drift) and ``exp``
   10 minutes ahead. That is the assertion's lifetime, not the token's.
2. POST it to ``/app/installations/{id}/access_tokens``.
3. Cache the returned token, keyed by installation id, until 5 minutes
   before its ``expires_at``.

Concurrency:
    Concurrent callers share one refresh. The cache is read under an
    ``asyncio.Lock`` with a double check, so simultaneous expiry triggers a
    single mint instead of one per caller.

Failure:
    A private key that cannot be parsed, or a non-2xx exchange response,
    raises ``CredentialError``. Nothing is retried and an expired token is
    never handed out.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx
import jwt
import structlog

from repo_autopilot.exceptions import CredentialError

log = structlog.get_logger(__name__)

ASSERTION_BACKDATE_SECONDS = 60
ASSERTION_LIFETIME_SECONDS = 600
REFRESH_MARGIN_SECONDS = 300


@dataclass(frozen=True)
class Credential:
    """A bearer token and the moment it stops working."""

    token: str
    expires_at: datetime

    def is_fresh(self, now: float, margin: float = REFRESH_MARGIN_SECONDS) -> bool:
        """Whether the token is still usable ``margin`` seconds from ``now``."""
        return self.expires_at.timestamp() - margin > now


class CredentialBroker:
    """Mint, cache and refresh installation access tokens.

    Example:
        >>> broker = CredentialBroker(app_id=1234, installation_id=5678, private_key=pem)
        >>> credential = await broker.token()
        >>> headers = {"Authorization": f"Bearer {credential.token}"}
    """

    def __init__(
        self,
        app_id: int,
        installation_id: int,
        private_key: str,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize broker.

        Args:
            app_id: GitHub App ID, used as the JWT issuer
            installation_id: Installation to request tokens for
            private_key: PEM-encoded RSA private key of the App
            api_url: GitHub API base URL
            timeout: Exchange request timeout in seconds
            http_client: Client to use for the exchange (tests inject one)
            clock: Source of the current UNIX time
        """
        self.app_id = app_id
        self.installation_id = installation_id
        self.api_url = str(api_url).rstrip("/")
        self._private_key = private_key
        self._timeout = timeout
        self._http_client = http_client
        self._clock = clock
        self._cache: dict[int, Credential] = {}
        self._lock = asyncio.Lock()

    async def token(self) -> Credential:
        """Return a credential valid for at least the refresh margin.

        Raises:
            CredentialError: If minting or the exchange fails
        """
        cached = self._cache.get(self.installation_id)
        if cached is not None and cached.is_fresh(self._clock()):
            return cached

        async with self._lock:
            # Another caller may have refreshed while we waited
            cached = self._cache.get(self.installation_id)
            if cached is not None and cached.is_fresh(self._clock()):
                return cached

            credential = await self._exchange(self._mint_assertion())
            if not credential.is_fresh(self._clock(), margin=0):
                raise CredentialError("Token exchange returned an already expired token")
            self._cache[self.installation_id] = credential
            log.info(
                "installation_token_refreshed",
                installation_id=self.installation_id,
                expires_at=credential.expires_at.isoformat(),
            )
            return credential

    def invalidate(self) -> None:
        """Drop the cached credential, e.g. after the platform rejected it."""
        self._cache.pop(self.installation_id, None)

    def _mint_assertion(self) -> str:
        """Sign a short-lived JWT identifying the App."""
        now = int(self._clock())
        payload = {
            "iat": now - ASSERTION_BACKDATE_SECONDS,
            "exp": now + ASSERTION_LIFETIME_SECONDS,
            "iss": str(self.app_id),
        }
        try:
            return jwt.encode(payload, self._private_key, algorithm="RS256")
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            log.error("assertion_signing_failed", app_id=self.app_id, error=str(e))
            raise CredentialError(f"Cannot sign App assertion with the configured private key: {e}") from e

    async def _exchange(self, assertion: str) -> Credential:
        """Trade the signed assertion for an installation token."""
        url = f"{self.api_url}/app/installations/{self.installation_id}/access_tokens"
        headers = {
            "Authorization": f"Bearer {assertion}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, headers=headers)
        except httpx.HTTPError as e:
            log.error("token_exchange_unreachable", installation_id=self.installation_id, error=str(e))
            raise CredentialError(f"Token exchange request failed: {e}") from e

        if not response.is_success:
            log.error(
                "token_exchange_rejected",
                installation_id=self.installation_id,
                status_code=response.status_code,
            )
            raise CredentialError("Token exchange rejected", status_code=response.status_code)

        try:
            data = response.json()
            expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
            token = data["token"]
        except (ValueError, KeyError, AttributeError) as e:
            raise CredentialError(f"Malformed token exchange response: {e}") from e

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return Credential(token=token, expires_at=expires_at)
