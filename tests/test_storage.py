import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from app.core.config import Settings
from app.core.errors import ConfigurationError, StorageError, TransientError, ValidationError
from app.core.storage import MAX_DELETE_BATCH, PRESIGN_EXPIRES_IN, ObjectStore


class BrokenS3:
    def __init__(self, error):
        self.error = error

    def list_objects_v2(self, **kwargs):
        raise self.error


def test_missing_configuration_is_rejected():
    """Bucket and credentials are required"""
    with pytest.raises(ConfigurationError):
        ObjectStore(bucket=None, client_factory=lambda: object())
    with pytest.raises(ConfigurationError):
        ObjectStore.from_settings(Settings(R2_BUCKET_NAME="bucket", _env_file=None))


@pytest.mark.asyncio
async def test_list_objects_follows_continuation(object_store, fake_s3):
    """Listing pages through every result"""
    for i in range(2500):
        fake_s3.add(f"p/{i:05d}", size=i)
    fake_s3.add("q/outside")

    objects = await object_store.list_objects("p/")

    assert len(objects) == 2500
    assert [c for c in fake_s3.calls if c[0] == "list_objects_v2"] == [
        ("list_objects_v2", None),
        ("list_objects_v2", "1000"),
        ("list_objects_v2", "2000"),
    ]
    assert objects[0].last_modified.startswith("2024-01-01")


@pytest.mark.asyncio
async def test_delete_objects_limits_batch(object_store, fake_s3):
    """More than 1000 keys in one call is refused before any request"""
    with pytest.raises(ValidationError):
        await object_store.delete_objects([f"k{i}" for i in range(MAX_DELETE_BATCH + 1)])
    assert fake_s3.calls == []
    assert await object_store.delete_objects([]) == []


@pytest.mark.asyncio
async def test_delete_objects_reports_per_key_errors(object_store, fake_s3):
    """Per-key failures are returned, the rest are gone"""
    fake_s3.add("a")
    fake_s3.add("b")
    fake_s3.fail_keys = {"b"}

    assert await object_store.delete_objects(["a", "b"]) == ["b"]
    assert "a" not in fake_s3.objects


@pytest.mark.asyncio
async def test_put_delete_and_presign(object_store, fake_s3):
    """Single-object operations reach the client"""
    await object_store.put_object("x/file.txt", b"hello", "text/plain")
    assert fake_s3.objects["x/file.txt"]["Size"] == 5

    url = await object_store.create_presigned_upload_url("x/new.png", "image/png")
    assert "x/new.png" in url
    assert f"expires={PRESIGN_EXPIRES_IN}" in url

    await object_store.delete_object("x/file.txt")
    assert "x/file.txt" not in fake_s3.objects


@pytest.mark.asyncio
async def test_client_errors_are_mapped():
    """Service errors become StorageError, connection errors TransientError"""
    denied = ObjectStore(
        "bucket",
        client_factory=lambda: BrokenS3(
            ClientError({"Error": {"Code": "AccessDenied"}}, "ListObjectsV2")
        ),
    )
    with pytest.raises(StorageError):
        await denied.list_objects()

    offline = ObjectStore(
        "bucket",
        client_factory=lambda: BrokenS3(
            EndpointConnectionError(endpoint_url="https://r2.example.test")
        ),
    )
    with pytest.raises(TransientError):
        await offline.list_objects()


def test_reset_rebuilds_client():
    """reset() asks the factory for a fresh client"""
    built = []

    def factory():
        built.append(object())
        return built[-1]

    store = ObjectStore("bucket", client_factory=factory)
    store.reset()
    assert len(built) == 2
