import asyncio
import json
import os
import sqlite3
from datetime import datetime, timedelta, timezone

# Settings are read at import time, so configure them before importing the app
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("R2_PUBLIC_DOMAIN", "https://files.example.test")
os.environ.setdefault("R2_USER_HASH_SALT", "test-salt")

import httpx
import jwt
import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from httpx import AsyncClient, ASGITransport

from app.main import app
from app.core.config import settings
from app.core.database import D1Client, ensure_schema, get_client
from app.core.screenshots import ScreenshotFetcher, get_screenshot_fetcher
from app.core.scoped import Scope, ScopedDB
from app.core.storage import ObjectStore, get_object_store

OWNER_ID = "user-a"
OTHER_ID = "user-b"


# Tokens are issued by the external auth provider; tests mint their own
def make_token(user_id, minutes=60):
    payload = {
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


# =========================
# Fake SQL store (D1 HTTP query API over in-memory sqlite)
# =========================
class FakeD1:
    """
    Speaks the D1 query API: a single ``{sql, params}`` body or a list of them.
    A list runs inside one transaction, like a D1 batch.
    """

    def __init__(self):
        self.conn = sqlite3.connect(":memory:", isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.requests = []
        self.hang = False
        self.response_override = None

    @property
    def statements(self):
        """Every statement received, flattened across requests."""
        flat = []
        for body in self.requests:
            flat.extend(body if isinstance(body, list) else [body])
        return flat

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.hang:
            await asyncio.sleep(30)

        body = json.loads(request.content)
        self.requests.append(body)

        if self.response_override is not None:
            return self.response_override

        statements = body if isinstance(body, list) else [body]
        results = []
        self.conn.execute("BEGIN")
        try:
            for statement in statements:
                cursor = self.conn.execute(statement["sql"], statement.get("params", []))
                rows = [dict(row) for row in cursor.fetchall()]
                results.append(
                    {
                        "results": rows,
                        "success": True,
                        "meta": {
                            "changes": cursor.rowcount,
                            "last_row_id": cursor.lastrowid,
                        },
                    }
                )
        except sqlite3.Error as error:
            self.conn.execute("ROLLBACK")
            return httpx.Response(
                400,
                json={
                    "success": False,
                    "errors": [{"code": 7500, "message": f"{error}: SQLITE_ERROR"}],
                    "result": [],
                },
            )
        self.conn.execute("COMMIT")
        return httpx.Response(200, json={"success": True, "errors": [], "result": results})

    def query(self, sql, params=()):
        return [dict(row) for row in self.conn.execute(sql, params).fetchall()]


# =========================
# Fake object store (S3 client surface used by ObjectStore)
# =========================
class FakeS3:
    def __init__(self):
        self.objects = {}
        self.calls = []
        self.fail_keys = set()
        self.fail_delete_calls = set()

    def add(self, key, size=100):
        self.objects[key] = {
            "Key": key,
            "Size": size,
            "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=1000, ContinuationToken=None):
        self.calls.append(("list_objects_v2", ContinuationToken))
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        start = int(ContinuationToken or 0)
        page = keys[start : start + MaxKeys]
        truncated = start + MaxKeys < len(keys)
        response = {
            "Contents": [self.objects[k] for k in page],
            "IsTruncated": truncated,
        }
        if truncated:
            response["NextContinuationToken"] = str(start + MaxKeys)
        return response

    def put_object(self, Bucket, Key, Body, ContentType):
        self.calls.append(("put_object", Key))
        self.add(Key, len(Body))
        self.objects[Key]["ContentType"] = ContentType

    def delete_object(self, Bucket, Key):
        self.calls.append(("delete_object", Key))
        self.objects.pop(Key, None)

    def delete_objects(self, Bucket, Delete):
        number = len([c for c in self.calls if c[0] == "delete_objects"])
        keys = [entry["Key"] for entry in Delete["Objects"]]
        self.calls.append(("delete_objects", keys))
        if number in self.fail_delete_calls:
            raise ClientError(
                {"Error": {"Code": "InternalError", "Message": "boom"}}, "DeleteObjects"
            )

        errors = []
        for key in keys:
            if key in self.fail_keys:
                errors.append({"Key": key, "Code": "AccessDenied", "Message": "denied"})
            else:
                self.objects.pop(key, None)
        return {"Errors": errors} if errors else {}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self.calls.append(("generate_presigned_url", Params["Key"]))
        return f"https://upload.example.test/{Params['Key']}?expires={ExpiresIn}"


# =========================
# Fixtures
# =========================
@pytest.fixture
def fake_d1():
    fake = FakeD1()
    yield fake
    fake.conn.close()


@pytest_asyncio.fixture(scope="function")
async def d1(fake_d1):
    client = D1Client(
        account_id="account",
        database_id="database",
        api_token="token",
        base_url="https://d1.example.test/client/v4",
        transport=httpx.MockTransport(fake_d1.handler),
    )
    await ensure_schema(client)
    fake_d1.requests.clear()
    yield client
    await client.aclose()


@pytest.fixture
def owner_db(d1):
    return ScopedDB(d1, Scope(OWNER_ID))


@pytest.fixture
def other_db(d1):
    return ScopedDB(d1, Scope(OTHER_ID))


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def object_store(fake_s3):
    return ObjectStore("test-bucket", client_factory=lambda: fake_s3)


# =========================
# Fake screenshot host
# =========================
class FakeImageHost:
    """Serves canned image bodies by URL; unknown URLs are a 404."""

    def __init__(self):
        self.images = {}
        self.requests = []

    def add(self, url, body=b"\x89PNG fake image", content_type="image/png", headers=None):
        self.images[url] = (body, content_type, headers or {})

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if str(request.url) not in self.images:
            return httpx.Response(404)
        body, content_type, headers = self.images[str(request.url)]
        return httpx.Response(
            200, content=body, headers={"content-type": content_type, **headers}
        )


@pytest.fixture
def image_host():
    return FakeImageHost()


@pytest_asyncio.fixture(scope="function")
async def screenshot_fetcher(image_host):
    fetcher = ScreenshotFetcher(transport=httpx.MockTransport(image_host.handler))
    yield fetcher
    await fetcher.aclose()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(d1, object_store, screenshot_fetcher):
    app.dependency_overrides[get_client] = lambda: d1
    app.dependency_overrides[get_object_store] = lambda: object_store
    app.dependency_overrides[get_screenshot_fetcher] = lambda: screenshot_fetcher

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# Token for the owner
@pytest.fixture
def auth_headers():
    token = make_token(OWNER_ID)
    return {"Authorization": f"Bearer {token}"}


# Token for a second tenant
@pytest.fixture
def auth_headers_other():
    token = make_token(OTHER_ID)
    return {"Authorization": f"Bearer {token}"}
