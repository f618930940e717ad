"""
Unit tests for the retry delay policy and the backoff-aware client loop
"""

import pytest
import httpx
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

from core.exceptions import NetworkError, RateLimitError, RemoteQueryError
from ingestion.remote.backoff import BackoffPolicy, is_transient, parse_retry_after, retry_transient


class TestParseRetryAfter:
    """Retry-After header parsing"""

    def test_delta_seconds(self):
        assert parse_retry_after("2") == 2.0
        assert parse_retry_after(" 1.5 ") == 1.5

    def test_negative_delta_clamped_to_zero(self):
        assert parse_retry_after("-3") == 0.0

    def test_http_date_in_future(self):
        now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=30), usegmt=True)
        assert parse_retry_after(header, now=now) == pytest.approx(30.0)

    def test_http_date_in_past_is_zero(self):
        now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now - timedelta(minutes=5), usegmt=True)
        assert parse_retry_after(header, now=now) == 0.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None
        assert parse_retry_after("soon") is None


class TestIsTransient:

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 599])
    def test_transient_statuses(self, status):
        assert is_transient(status)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_are_not_transient(self, status):
        assert not is_transient(status)

    def test_concurrency_code_is_transient_regardless_of_status(self):
        assert is_transient(400, "CONCURRENCY_LIMIT_EXCEEDED")


class TestBackoffPolicy:

    def test_exponential_table_then_last_entry(self):
        policy = BackoffPolicy(schedule=[0.5, 1, 2, 4, 8], min_wait=0.25, max_wait=120)
        waits = [policy.delay(attempt) for attempt in range(7)]
        assert waits == [0.5, 1, 2, 4, 8, 8, 8]

    def test_hint_wins_over_table(self):
        policy = BackoffPolicy(schedule=[0.5, 1, 2, 4, 8], min_wait=0.25, max_wait=120)
        assert policy.delay(4, retry_after=2.0) == 2.0

    def test_clamped_to_bounds(self):
        policy = BackoffPolicy(schedule=[0.5, 1, 2, 4, 8], min_wait=0.25, max_wait=120)
        assert policy.delay(0, retry_after=0) == 0.25
        assert policy.delay(0, retry_after=3600) == 120


class TestRetryTransient:
    """Shared retry loop for rate-limit and transport errors"""

    @pytest.mark.asyncio
    async def test_retryable_errors_are_waited_out(self):
        outcomes = [
            RateLimitError("transient 429", retry_after=7),
            NetworkError("transport error (ReadTimeout)"),
            RateLimitError("transient 503"),
        ]
        waits = []

        async def send():
            if outcomes:
                raise outcomes.pop(0)
            return "ok"

        async def record(seconds):
            waits.append(seconds)

        result = await retry_transient(send, BackoffPolicy(), record, tag="test")

        assert result == "ok"
        assert waits == [7.0, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_errors_propagate(self):
        waits = []

        async def send():
            raise RemoteQueryError("bad statement", context={"status": 400})

        async def record(seconds):
            waits.append(seconds)

        with pytest.raises(RemoteQueryError):
            await retry_transient(send, BackoffPolicy(), record)

        assert waits == []

    def test_rate_limit_hint_recorded_in_context(self):
        error = RateLimitError("transient 429", context={"tag": "customers"}, retry_after=4.0)

        assert error.retry_after == 4.0
        assert error.context == {"tag": "customers", "retry_after": 4.0}
        assert error.error_kind == "rate_limited"


class TestClientBackoff:
    """The client retries transient conditions and honours the server hint"""

    @pytest.mark.asyncio
    async def test_retry_after_hint_is_honoured(self, netsuite, netsuite_client, sleeps):
        netsuite.on_query("from customer", [{"id": "1"}])
        netsuite.fail_next(429, headers={"Retry-After": "2"})

        rows = await netsuite_client.query("SELECT id FROM customer", tag="customers")

        assert rows == [{"id": "1"}]
        assert sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_waits_follow_table_without_hint(self, netsuite, netsuite_client, sleeps):
        netsuite.on_query("from customer", [{"id": "1"}])
        netsuite.fail_next(503, times=3)
        netsuite.fail_next(400, json_body={"o:errorDetails": [{"o:errorCode": "CONCURRENCY_LIMIT_EXCEEDED"}]})

        await netsuite_client.query("SELECT id FROM customer", tag="customers")

        assert sleeps == [0.5, 1.0, 2.0, 4.0]
        assert all(wait <= 120 for wait in sleeps)

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, netsuite, sleeps, clock):
        from ingestion.remote.client import NetSuiteClient
        from ingestion.remote.credentials import AccessToken, CredentialCache

        calls = {"n": 0}

        def flaky(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return netsuite.handler(request)

        async def token():
            return AccessToken(access_token="t", expires_in=3600, obtained_at=clock.now())

        async def record(seconds):
            sleeps.append(seconds)

        netsuite.on_query("from customer", [{"id": "7"}])
        async with httpx.AsyncClient(transport=httpx.MockTransport(flaky)) as http:
            client = NetSuiteClient(http, CredentialCache(token, clock=clock), sleep=record)
            rows = await client.query("SELECT id FROM customer", tag="customers")

        assert rows == [{"id": "7"}]
        assert sleeps == [0.5]

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, netsuite, netsuite_client, sleeps):
        netsuite.fail_next(
            400,
            json_body={"o:errorDetails": [{"o:errorCode": "INVALID_PARAMETER", "detail": "bad q"}]},
        )

        with pytest.raises(RemoteQueryError) as exc_info:
            await netsuite_client.query("SELECT nonsense", tag="broken")

        context = exc_info.value.context
        assert context["tag"] == "broken"
        assert context["status"] == 400
        assert context["code"] == "INVALID_PARAMETER"
        assert len(context["body"]) <= 600
        assert sleeps == []
        assert exc_info.value.error_kind == "remote_error"
