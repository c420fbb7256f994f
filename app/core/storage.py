import asyncio
import logging
from typing import Any, Callable, List, Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)
from fastapi import HTTPException, Request, status

from app.core.config import Settings
from app.core.errors import (
    ConfigurationError,
    StorageError,
    TransientError,
    ValidationError,
)
from app.core.schemas import StoredObject

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most this many keys per request
MAX_DELETE_BATCH = 1000
LIST_PAGE_SIZE = 1000
PRESIGN_EXPIRES_IN = 300
REQUEST_TIMEOUT_SECONDS = 10


class ObjectStore:
    """
    Async facade over a boto3 S3 client pointed at an R2 bucket.

    boto3 is blocking, so every call runs in a worker thread. The client can
    be injected, which is how tests swap in an in-memory fake.
    """

    def __init__(
        self,
        bucket: Optional[str],
        client_factory: Optional[Callable[[], Any]] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        if not bucket:
            raise ConfigurationError("Object storage bucket not configured")
        if client_factory is None:
            if not access_key_id or not secret_access_key or not endpoint_url:
                raise ConfigurationError("Object storage credentials not configured")
            client_factory = lambda: _build_s3_client(  # noqa: E731
                access_key_id, secret_access_key, endpoint_url
            )

        self.bucket = bucket
        self._client_factory = client_factory
        self._s3 = client_factory()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStore":
        return cls(
            bucket=settings.R2_BUCKET_NAME,
            access_key_id=settings.R2_ACCESS_KEY_ID,
            secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            endpoint_url=settings.R2_ENDPOINT,
        )

    def reset(self) -> None:
        self._s3 = self._client_factory()

    async def _call(self, operation: str, **kwargs) -> Any:
        method = getattr(self._s3, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except (BotoConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            logger.warning(f"Object storage {operation} unreachable: {e}")
            raise TransientError() from None
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            logger.error(f"Object storage {operation} failed ({code}): {e}")
            raise StorageError() from None
        except BotoCoreError as e:
            logger.error(f"Object storage {operation} failed: {e}")
            raise StorageError() from None

    async def list_objects(self, prefix: str = "") -> List[StoredObject]:
        """List every object under ``prefix``, following continuation tokens."""
        objects = []
        params = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": LIST_PAGE_SIZE}

        while True:
            page = await self._call("list_objects_v2", **params)
            for item in page.get("Contents", []) or []:
                last_modified = item.get("LastModified")
                objects.append(
                    StoredObject(
                        key=item["Key"],
                        size=item.get("Size", 0) or 0,
                        last_modified=(
                            last_modified.isoformat()
                            if hasattr(last_modified, "isoformat")
                            else str(last_modified or "")
                        ),
                    )
                )

            token = page.get("NextContinuationToken")
            if not page.get("IsTruncated") or not token:
                break
            params["ContinuationToken"] = token

        return objects

    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        await self._call(
            "put_object",
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )

    async def delete_object(self, key: str) -> None:
        await self._call("delete_object", Bucket=self.bucket, Key=key)

    async def delete_objects(self, keys: Sequence[str]) -> List[str]:
        """
        Delete up to MAX_DELETE_BATCH keys in one request.

        Returns the keys the store reported per-key errors for. Keys that did
        not exist count as deleted.
        """
        if not keys:
            return []
        if len(keys) > MAX_DELETE_BATCH:
            raise ValidationError(
                f"Cannot delete more than {MAX_DELETE_BATCH} objects per request"
            )

        response = await self._call(
            "delete_objects",
            Bucket=self.bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
        )
        errors = response.get("Errors", []) or []
        for error in errors:
            logger.warning(
                f"Could not delete {error.get('Key')}: {error.get('Code')}"
            )
        return [error.get("Key") for error in errors]

    async def create_presigned_upload_url(self, key: str, content_type: str) -> str:
        return await self._call(
            "generate_presigned_url",
            ClientMethod="put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=PRESIGN_EXPIRES_IN,
        )


def _build_s3_client(access_key_id: str, secret_access_key: str, endpoint_url: str):
    session = boto3.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        region_name="auto",
    )
    return session.client(
        "s3",
        endpoint_url=endpoint_url,
        config=BotoConfig(
            signature_version="s3v4",
            connect_timeout=REQUEST_TIMEOUT_SECONDS,
            read_timeout=REQUEST_TIMEOUT_SECONDS,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
    )


# Dependency used by routes that touch object storage
def get_object_store(request: Request) -> ObjectStore:
    store = getattr(request.app.state, "object_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ConfigurationError.default_message,
        )
    return store
