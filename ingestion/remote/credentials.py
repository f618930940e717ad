"""
Bearer token cache for the NetSuite REST APIs.

The cache is an owned component: the application creates one at startup
and hands it to every client. Concurrent callers share a single refresh.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
import logging

from core.clock import MonotonicClock
from core.config import settings
from core.exceptions import NetworkError, RateLimitError, RemoteAuthenticationError
from ingestion.remote.backoff import BackoffPolicy, Sleep, is_transient, parse_retry_after, retry_transient

logger = logging.getLogger(__name__)


@dataclass
class AccessToken:
    """OAuth2 access token with expiration tracking."""
    access_token: str
    expires_in: float
    obtained_at: float
    token_type: str = "Bearer"

    @property
    def expires_at(self) -> float:
        return self.obtained_at + self.expires_in

    def is_expired(self, now: float, skew: float) -> bool:
        return now >= self.expires_at - skew


TokenFetcher = Callable[[], Awaitable[AccessToken]]


class ClientCredentialsFetcher:
    """
    Fetch tokens with the OAuth2 client-credentials grant.

    Usage:
        fetcher = ClientCredentialsFetcher(http_client)
        cache = CredentialCache(fetcher)
        token = await cache.get_valid_token()
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        clock: Optional[MonotonicClock] = None,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.http = http
        self.token_url = token_url or settings.token_url
        self.client_id = client_id or settings.NETSUITE_CLIENT_ID
        self.client_secret = client_secret or settings.NETSUITE_CLIENT_SECRET
        self.clock = clock or MonotonicClock()
        self.backoff = backoff or BackoffPolicy()
        self.sleep = sleep

    async def _request_token(self) -> httpx.Response:
        try:
            response = await self.http.post(
                self.token_url,
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"transport error ({type(e).__name__})",
                context={"tag": "oauth_token"},
                original_exception=e,
            )

        if is_transient(response.status_code):
            raise RateLimitError(
                f"transient {response.status_code}",
                context={"tag": "oauth_token", "status": response.status_code},
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        return response

    async def __call__(self) -> AccessToken:
        if not self.client_id or not self.client_secret:
            raise RemoteAuthenticationError(
                "NetSuite client credentials are not configured",
                context={"token_url": self.token_url}
            )

        response = await retry_transient(self._request_token, self.backoff, self.sleep, tag="oauth_token")
        if response.status_code != 200:
            raise RemoteAuthenticationError(
                "Token request failed",
                context={
                    "tag": "oauth_token",
                    "status": response.status_code,
                    "body": response.text[:600],
                }
            )

        payload = response.json()
        return AccessToken(
            access_token=payload["access_token"],
            token_type=payload.get("token_type", "Bearer"),
            expires_in=float(payload.get("expires_in", 3600)),
            obtained_at=self.clock.now(),
        )


class CredentialCache:
    """
    Hands out a valid bearer token, refreshing it near expiry.

    Handles:
    - Expiry with a refresh skew
    - One refresh for many concurrent callers (asyncio.Lock)
    - Explicit invalidation after an authentication failure
    """

    def __init__(
        self,
        fetcher: TokenFetcher,
        clock: Optional[MonotonicClock] = None,
        refresh_skew: Optional[float] = None,
    ):
        self.fetcher = fetcher
        self.clock = clock or MonotonicClock()
        self.refresh_skew = (
            refresh_skew if refresh_skew is not None else settings.TOKEN_REFRESH_SKEW_SECONDS
        )
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _current(self) -> Optional[AccessToken]:
        token = self._token
        if token is None or token.is_expired(self.clock.now(), self.refresh_skew):
            return None
        return token

    async def get_valid_token(self) -> str:
        token = self._current()
        if token is not None:
            return token.access_token

        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self._current()
            if token is None:
                logger.info("Refreshing NetSuite access token")
                token = await self.fetcher()
                self._token = token
                self.refresh_count += 1
            return token.access_token

    def invalidate(self) -> None:
        self._token = None
