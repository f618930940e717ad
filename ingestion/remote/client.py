"""
Backoff-aware NetSuite client.

One client is shared by every extractor. It covers both remote access
methods:

- SuiteQL (``query``): POST a statement, follow ``links[rel=next]`` pages.
- RESTlet scripts (``call_script``): GET/POST a deployed script endpoint.

Transient conditions (HTTP 429, any 5xx, provider code
CONCURRENCY_LIMIT_EXCEEDED, transport errors) are retried without an
attempt limit, waiting for the server Retry-After hint when present and
the exponential table otherwise. Anything else raises immediately.
"""

import asyncio
from typing import Any, Dict, List, Optional, Type

import httpx
import logging

from core.config import settings
from core.exceptions import (
    NetworkError,
    RateLimitError,
    RemoteAuthenticationError,
    RemoteQueryError,
    ScriptEndpointError,
)
from ingestion.remote.backoff import BackoffPolicy, Sleep, is_transient, parse_retry_after, retry_transient
from ingestion.remote.credentials import CredentialCache

logger = logging.getLogger(__name__)

BODY_PREVIEW_CHARS = 600


def provider_error_code(response: httpx.Response) -> Optional[str]:
    """First ``o:errorCode`` from a NetSuite error body, if any"""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    details = payload.get("o:errorDetails")
    if isinstance(details, list) and details and isinstance(details[0], dict):
        return details[0].get("o:errorCode")
    return None


class NetSuiteClient:
    """
    Rate-limit aware access to SuiteQL and RESTlet scripts.

    Attributes:
        http: Shared httpx.AsyncClient
        credentials: Token cache used for every attempt
        backoff: Delay policy for transient conditions
        sleep: Awaitable sleep, injectable so tests can observe waits
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        credentials: CredentialCache,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Optional[Sleep] = None,
        suiteql_url: Optional[str] = None,
        record_url: Optional[str] = None,
    ):
        self.http = http
        self.credentials = credentials
        self.backoff = backoff or BackoffPolicy()
        self.sleep = sleep or asyncio.sleep
        self.suiteql_url = suiteql_url or settings.suiteql_url
        self.record_url = record_url or settings.record_url

    async def _send_once(
        self,
        method: str,
        url: str,
        tag: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """One attempt; transient outcomes raise a RetryableError"""
        token = await self.credentials.get_valid_token()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(headers)

        try:
            response = await self.http.request(
                method, url, params=params, json=json, headers=request_headers
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"transport error ({type(e).__name__})",
                context={"tag": tag},
                original_exception=e,
            )

        status = response.status_code
        if 200 <= status < 300:
            return response

        code = provider_error_code(response)
        if is_transient(status, code):
            raise RateLimitError(
                f"transient {status} {code or ''}".rstrip(),
                context={"tag": tag, "status": status, "code": code},
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        return response

    async def _send_with_backoff(
        self,
        method: str,
        url: str,
        tag: str,
        error_class: Type[RemoteQueryError],
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        reauthenticated = False

        while True:
            response = await retry_transient(
                lambda: self._send_once(method, url, tag, params=params, json=json, headers=headers),
                self.backoff,
                self.sleep,
                tag=tag,
            )
            status = response.status_code
            if 200 <= status < 300:
                return response

            context = {
                "tag": tag,
                "status": status,
                "code": provider_error_code(response),
                "body": response.text[:BODY_PREVIEW_CHARS],
            }

            if status in (401, 403):
                self.credentials.invalidate()
                if not reauthenticated:
                    reauthenticated = True
                    logger.info(f"[{tag}] {status} from NetSuite, retrying with a fresh token")
                    continue
                raise RemoteAuthenticationError(f"{tag}: NetSuite rejected credentials", context=context)

            raise error_class(f"{tag}: NetSuite returned {status}", context=context)

    async def query(self, statement: str, tag: str) -> List[Dict[str, Any]]:
        """Run a SuiteQL statement and return every row across all pages"""
        rows: List[Dict[str, Any]] = []
        url: Optional[str] = self.suiteql_url
        page = 0

        while url:
            response = await self._send_with_backoff(
                "POST",
                url,
                tag,
                RemoteQueryError,
                json={"q": statement},
                headers={
                    "Content-Type": "application/json",
                    "Prefer": "transient, maxpagesize=1000",
                },
            )
            payload = response.json()
            rows.extend(payload.get("items") or [])
            page += 1

            url = None
            for link in payload.get("links") or []:
                if link.get("rel") == "next" and link.get("href"):
                    url = link["href"]
                    break

        logger.debug(f"[{tag}] {len(rows)} rows in {page} page(s)")
        return rows

    async def call_script(
        self,
        method: str,
        url: str,
        tag: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        """Call a RESTlet and return its decoded JSON body"""
        headers = {"Content-Type": "application/json"} if json is not None else None
        response = await self._send_with_backoff(
            method, url, tag, ScriptEndpointError, params=params, json=json, headers=headers
        )
        try:
            return response.json()
        except ValueError as e:
            raise ScriptEndpointError(
                f"{tag}: script returned a non-JSON body",
                context={
                    "tag": tag,
                    "status": response.status_code,
                    "body": response.text[:BODY_PREVIEW_CHARS],
                },
                original_exception=e,
            )

    async def get_record(self, record_type: str, record_id: int, tag: str) -> Dict[str, Any]:
        """Fetch one record from the REST record service with its sublists expanded"""
        response = await self._send_with_backoff(
            "GET",
            f"{self.record_url}/{record_type}/{record_id}",
            tag,
            RemoteQueryError,
            params={"expandSubResources": "true"},
            headers={"Prefer": "transient"},
        )
        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteQueryError(
                f"{tag}: record service returned a non-JSON body",
                context={"tag": tag, "status": response.status_code, "body": response.text[:BODY_PREVIEW_CHARS]},
                original_exception=e,
            )
        return payload if isinstance(payload, dict) else {}
