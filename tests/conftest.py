"""
Pytest configuration and fixtures
"""

import os

# NetSuite hosts and the admin secret must exist before settings load
os.environ.setdefault("NETSUITE_ACCOUNT_ID", "1234567")
os.environ.setdefault("ADMIN_SYNC_SECRET", "test-admin-secret")

import json
import re
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from core.config import settings
from ingestion.remote.client import NetSuiteClient
from ingestion.remote.credentials import AccessToken, CredentialCache
from models.base import Base
import models  # noqa: F401


def _test_database_url(tmp_path) -> str:
    # Set TEST_DATABASE_URL to run the store-backed tests against PostgreSQL
    return os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'sync_test.db'}"


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine"""
    engine = create_async_engine(
        _test_database_url(tmp_path),
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


async def fetch_rows(session: AsyncSession, model, *where) -> List[Dict[str, Any]]:
    """Table rows as dicts, bypassing the ORM identity map"""
    result = await session.execute(select(model.__table__).where(*where))
    return [dict(row) for row in result.mappings().all()]


@pytest.fixture
def table_rows():
    return fetch_rows


class FakeClock:
    """Manually advanced seconds source"""

    def __init__(self, start: float = 1000.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Fake NetSuite
# ============================================================================

QueryRows = Union[List[Dict[str, Any]], Callable[[str], List[Dict[str, Any]]]]


class FakeNetSuite:
    """
    In-memory NetSuite behind httpx.MockTransport.

    Serves SuiteQL (canned rows per statement fragment, file lookups by
    name/folder), the file RESTlet (line windows over stored files), the
    record service, the payment instrument RESTlet and the token
    endpoint. ``fail_next`` queues raw responses returned before normal
    handling.
    """

    def __init__(self):
        self.files: Dict[int, Tuple[str, int, str]] = {}
        self.queries: List[Tuple[str, QueryRows]] = []
        self.instruments: Dict[int, Any] = {}
        self.records: Dict[Tuple[str, int], Any] = {}
        self.queued: List[httpx.Response] = []
        self.requests: List[httpx.Request] = []
        self.statements: List[str] = []
        self.suiteql_page_size: Optional[int] = None

    # -- setup --------------------------------------------------------------

    def add_file(self, file_id: int, name: str, content: Union[str, list, dict], folder_id: Optional[int] = None):
        if isinstance(content, list):
            content = "\n".join(json.dumps(row) for row in content)
        elif isinstance(content, dict):
            content = json.dumps(content)
        self.files[file_id] = (name, folder_id or settings.NS_EXPORT_FOLDER_ID, content)

    def add_record(self, record_type: str, record_id: int, body: Union[dict, int]):
        """Record served by the record service; an int body is returned as that status"""
        self.records[(record_type, record_id)] = body

    def on_query(self, fragment: str, rows: QueryRows):
        self.queries.append((fragment.lower(), rows))

    def fail_next(self, status: int, json_body: Any = None, headers: Optional[Dict[str, str]] = None, times: int = 1):
        for _ in range(times):
            self.queued.append(httpx.Response(status, json=json_body, headers=headers))

    def requests_to(self, path_fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if path_fragment in str(r.url)]

    # -- transport ----------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queued:
            return self.queued.pop(0)

        path = request.url.path
        host = request.url.host
        if path.endswith("/auth/oauth2/v1/token"):
            return httpx.Response(200, json={"access_token": "fake-token", "expires_in": 3600})
        if path.endswith("/query/v1/suiteql"):
            return self._suiteql(request)
        if "/record/v1/" in path:
            return self._record(request)
        if path.endswith("/restlet.nl") and ".restlets." in host:
            return self._instruments(request)
        if path.endswith("/restlet.nl"):
            return self._file_window(request)
        return httpx.Response(404, json={"error": f"unexpected {request.method} {request.url}"})

    def _suiteql(self, request: httpx.Request) -> httpx.Response:
        statement = json.loads(request.content)["q"]
        self.statements.append(statement)
        rows = self._rows_for(statement)

        offset = int(request.url.params.get("offset", 0))
        body: Dict[str, Any] = {"items": rows, "links": []}
        if self.suiteql_page_size:
            page = rows[offset:offset + self.suiteql_page_size]
            body["items"] = page
            if offset + len(page) < len(rows):
                next_url = f"{settings.suiteql_url}?offset={offset + len(page)}"
                body["links"] = [{"rel": "next", "href": next_url}]
        return httpx.Response(200, json=body)

    def _rows_for(self, statement: str) -> List[Dict[str, Any]]:
        lookup = re.search(r"FROM file WHERE name = '((?:[^']|'')*)' AND folder = (\d+)", statement)
        if lookup:
            name, folder = lookup.group(1).replace("''", "'"), int(lookup.group(2))
            ids = sorted((fid for fid, (n, f, _) in self.files.items() if n == name and f == folder), reverse=True)
            return [{"id": str(ids[0])}] if ids else []

        lowered = statement.lower()
        for fragment, rows in self.queries:
            if fragment in lowered:
                return rows(statement) if callable(rows) else list(rows)
        return []

    def _file_window(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        if "id" in params:
            entry = self.files.get(int(params["id"]))
        else:
            folder = int(params.get("folderId", 0))
            matches = [v for _, v in sorted(self.files.items(), reverse=True)
                       if v[0] == params.get("name") and v[1] == folder]
            entry = matches[0] if matches else None
        if entry is None:
            return httpx.Response(200, json={"ok": False, "error": "FILE_NOT_FOUND"})

        lines = entry[2].split("\n")
        start = int(params.get("lineStart", 0))
        max_lines = int(params.get("maxLines", 2000))
        window = lines[start:start + max_lines]
        return httpx.Response(200, json={
            "ok": True,
            "data": "\n".join(window),
            "linesReturned": len(window),
            "done": start + len(window) >= len(lines),
        })

    def _record(self, request: httpx.Request) -> httpx.Response:
        record_type, record_id = request.url.path.rsplit("/", 2)[-2:]
        body = self.records.get((record_type, int(record_id)))
        if body is None or isinstance(body, int):
            return httpx.Response(body or 404, json={"o:errorDetails": [{"o:errorCode": "NONEXISTENT_ID"}]})
        return httpx.Response(200, json=body)

    def _instruments(self, request: httpx.Request) -> httpx.Response:
        customer_id = int(json.loads(request.content)["customerId"])
        answer = self.instruments.get(customer_id, {"success": True, "instruments": []})
        if isinstance(answer, int):
            return httpx.Response(answer, json={"error": "bad request"})
        return httpx.Response(200, json=answer)


@pytest.fixture
def netsuite() -> FakeNetSuite:
    return FakeNetSuite()


@pytest.fixture
def sleeps() -> List[float]:
    """Waits requested by the client, recorded instead of slept"""
    return []


@pytest_asyncio.fixture
async def netsuite_client(netsuite, sleeps, clock) -> AsyncGenerator[NetSuiteClient, None]:
    async def static_token() -> AccessToken:
        return AccessToken(access_token="fake-token", expires_in=3600, obtained_at=clock.now())

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async with httpx.AsyncClient(transport=httpx.MockTransport(netsuite.handler)) as http:
        yield NetSuiteClient(http, CredentialCache(static_token, clock=clock), sleep=record_sleep)

