"""
Public operations.

Every function here returns an ``Outcome`` and never raises: errors from the
taxonomy become a failed outcome with their short message, and anything else
is logged with its traceback and reported as a generic failure. The HTTP layer
turns failed outcomes into responses with ``unwrap``.
"""

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import HTTPException, status

from app.core import schemas
from app.core.backup import build_export_envelope, import_links, parse_import_payload
from app.core.database import D1Client
from app.core.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ShortLinkError,
    ValidationError,
)
from app.core.reconcile import (
    StorageReconciler,
    build_public_url,
    generate_object_key,
    tenant_prefix,
)
from app.core.schemas import Outcome, is_valid_url
from app.core.screenshots import ScreenshotFetcher
from app.core.scoped import ScopedDB, increment_clicks, resolve_slug
from app.core.slugs import (
    DEFAULT_MAX_RETRIES,
    RetryPolicy,
    SlugAllocator,
    is_valid_slug,
    sanitize_slug,
)
from app.core.storage import ObjectStore

logger = logging.getLogger(__name__)

# Failed outcome code -> HTTP status
STATUS_BY_CODE = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "transient": status.HTTP_503_SERVICE_UNAVAILABLE,
    "configuration": status.HTTP_503_SERVICE_UNAVAILABLE,
    "storage": status.HTTP_502_BAD_GATEWAY,
    "store": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "internal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def action(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Outcome]]:
    """Run ``func`` and fold its result or error into an Outcome."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Outcome:
        try:
            return Outcome.ok(await func(*args, **kwargs))
        except ShortLinkError as error:
            logger.info(f"{func.__name__} failed: {error.code}: {error.message}")
            return Outcome.fail(error)
        except Exception:
            logger.exception(f"Unexpected error in {func.__name__}")
            return Outcome.fail(ShortLinkError(f"Failed to {func.__name__.replace('_', ' ')}"))

    return wrapper


def unwrap(outcome: Outcome) -> Any:
    """Return the outcome's data, or raise the matching HTTPException."""
    if outcome.success:
        return outcome.data
    raise HTTPException(
        status_code=STATUS_BY_CODE.get(outcome.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=outcome.error,
    )


def _require_url(value: str, label: str = "URL") -> None:
    if not is_valid_url(value):
        raise ValidationError(f"Invalid {label}")


# =========================
# Links
# =========================
@action
async def create_link(
    db: ScopedDB, data: schemas.LinkCreate, max_attempts: int = DEFAULT_MAX_RETRIES
) -> schemas.Link:
    _require_url(data.original_url)

    allocator = SlugAllocator(db.slug_exists)
    fields = dict(
        original_url=data.original_url,
        folder_id=data.folder_id,
        expires_at=data.expires_at,
    )

    if data.custom_slug is not None:
        slug = await allocator.claim_custom(data.custom_slug)
        return await db.create_link(slug=slug, is_custom=True, **fields)

    # A concurrent insert may take the slug after the existence check
    async def attempt() -> Optional[schemas.Link]:
        slug = await allocator.allocate()
        try:
            return await db.create_link(slug=slug, is_custom=False, **fields)
        except ConflictError:
            logger.info("Allocated slug was taken before insert, retrying")
            return None

    policy = RetryPolicy(max_attempts)
    return await policy.run(attempt, accept=lambda link: link is not None)


@action
async def list_links(db: ScopedDB) -> List[schemas.Link]:
    return await db.list_links()


@action
async def get_link(db: ScopedDB, link_id: int) -> schemas.Link:
    link = await db.get_link(link_id)
    if link is None:
        raise NotFoundError("Link not found")
    return link


@action
async def get_links_by_ids(db: ScopedDB, ids: List[int]) -> List[schemas.Link]:
    return await db.get_links_by_ids(ids)


@action
async def update_link(db: ScopedDB, link_id: int, data: schemas.LinkUpdate) -> schemas.Link:
    fields = data.model_dump(exclude_unset=True)

    if fields.get("original_url") is not None:
        _require_url(fields["original_url"])
    elif "original_url" in fields:
        raise ValidationError("Invalid URL")
    if fields.get("screenshot_url") is not None:
        _require_url(fields["screenshot_url"], "screenshot URL")

    slug = None
    if "slug" in fields:
        slug = sanitize_slug(fields.pop("slug") or "")
        if not is_valid_slug(slug):
            raise ValidationError(
                "Invalid slug: only letters, numbers, hyphens and underscores allowed (1-50 chars)"
            )
        # A link may keep its own slug
        if await db.slug_taken_by_other(slug, link_id):
            raise ConflictError("This slug is already taken")

    updated = await db.update_link(link_id, **fields)
    if updated is None:
        raise NotFoundError("Link not found")

    # Other fields are already written if the rename loses a race
    if slug is not None and slug != updated.slug:
        updated = await db.rename_link(link_id, slug)
        if updated is None:
            raise NotFoundError("Link not found")
    return updated


@action
async def update_link_note(db: ScopedDB, link_id: int, note: Optional[str]) -> schemas.Link:
    updated = await db.update_link_note(link_id, note)
    if updated is None:
        raise NotFoundError("Link not found")
    return updated


@action
async def update_link_metadata(
    db: ScopedDB, link_id: int, data: schemas.LinkMetadataUpdate
) -> schemas.Link:
    if data.meta_favicon is not None:
        _require_url(data.meta_favicon, "favicon URL")
    updated = await db.update_link_metadata(link_id, **data.model_dump(exclude_unset=True))
    if updated is None:
        raise NotFoundError("Link not found")
    return updated


@action
async def save_screenshot(
    db: ScopedDB,
    store: ObjectStore,
    fetcher: ScreenshotFetcher,
    link_id: int,
    screenshot_url: str,
    public_domain: str,
    salt: str,
) -> schemas.Link:
    """
    Copy a remote screenshot into the object store and point the link at it.

    The stored object lives under the owner's prefix, so the reconciler sees
    it as referenced through the link's screenshot URL.
    """
    if not public_domain:
        raise ConfigurationError("Public storage domain not configured")
    if await db.get_link(link_id) is None:
        raise NotFoundError("Link not found")

    image = await fetcher.fetch(screenshot_url)
    key = generate_object_key("screenshot.png", tenant_prefix(db.scope.owner_id, salt))
    await store.put_object(key, image.body, image.content_type)

    updated = await db.update_link_screenshot(link_id, build_public_url(public_domain, key))
    if updated is None:
        # Deleted meanwhile; the object is left for cleanup
        raise NotFoundError("Link not found")
    return updated


@action
async def delete_link(db: ScopedDB, link_id: int) -> None:
    if not await db.delete_link(link_id):
        raise NotFoundError("Link not found")


# =========================
# Folders
# =========================
@action
async def list_folders(db: ScopedDB) -> List[schemas.Folder]:
    return await db.list_folders()


@action
async def create_folder(db: ScopedDB, data: schemas.FolderCreate) -> schemas.Folder:
    name = data.name.strip()
    if not name:
        raise ValidationError("Folder name cannot be empty")
    return await db.create_folder(name=name, icon=data.icon)


@action
async def update_folder(
    db: ScopedDB, folder_id: str, data: schemas.FolderUpdate
) -> schemas.Folder:
    fields = data.model_dump(exclude_unset=True, exclude_none=True)
    if "name" in fields:
        fields["name"] = fields["name"].strip()
        if not fields["name"]:
            raise ValidationError("Folder name cannot be empty")
    updated = await db.update_folder(folder_id, **fields)
    if updated is None:
        raise NotFoundError("Folder not found")
    return updated


@action
async def delete_folder(db: ScopedDB, folder_id: str) -> None:
    if not await db.delete_folder(folder_id):
        raise NotFoundError("Folder not found")


# =========================
# Tags
# =========================
@action
async def list_tags(db: ScopedDB) -> List[schemas.Tag]:
    return await db.list_tags()


@action
async def create_tag(db: ScopedDB, data: schemas.TagCreate) -> schemas.Tag:
    name = data.name.strip()
    if not name:
        raise ValidationError("Tag name cannot be empty")
    return await db.create_tag(name=name, color=data.color)


@action
async def update_tag(db: ScopedDB, tag_id: str, data: schemas.TagUpdate) -> schemas.Tag:
    fields = data.model_dump(exclude_unset=True, exclude_none=True)
    if "name" in fields:
        fields["name"] = fields["name"].strip()
        if not fields["name"]:
            raise ValidationError("Tag name cannot be empty")
    updated = await db.update_tag(tag_id, **fields)
    if updated is None:
        raise NotFoundError("Tag not found")
    return updated


@action
async def delete_tag(db: ScopedDB, tag_id: str) -> None:
    if not await db.delete_tag(tag_id):
        raise NotFoundError("Tag not found")


@action
async def add_tag_to_link(db: ScopedDB, link_id: int, tag_id: str) -> None:
    if not await db.add_tag_to_link(link_id, tag_id):
        raise NotFoundError("Link or tag not found")


@action
async def remove_tag_from_link(db: ScopedDB, link_id: int, tag_id: str) -> None:
    if not await db.remove_tag_from_link(link_id, tag_id):
        raise NotFoundError("Tag is not attached to this link")


# =========================
# Uploads
# =========================
@action
async def presign_upload(
    db: ScopedDB,
    store: ObjectStore,
    data: schemas.UploadRequest,
    public_domain: str,
    salt: str,
) -> schemas.PresignedUpload:
    if not public_domain:
        raise ConfigurationError("Public storage domain not configured")

    key = generate_object_key(data.file_name, tenant_prefix(db.scope.owner_id, salt))
    upload_url = await store.create_presigned_upload_url(key, data.file_type)
    return schemas.PresignedUpload(
        upload_url=upload_url,
        public_url=build_public_url(public_domain, key),
        key=key,
    )


@action
async def record_upload(
    db: ScopedDB, data: schemas.UploadCreate, salt: str
) -> schemas.Upload:
    # Keys outside the caller's namespace would escape reconciliation
    if not data.key.startswith(tenant_prefix(db.scope.owner_id, salt)):
        raise ValidationError("Invalid upload key")
    return await db.create_upload(**data.model_dump())


@action
async def list_uploads(db: ScopedDB) -> List[schemas.Upload]:
    return await db.list_uploads()


@action
async def delete_upload(db: ScopedDB, store: ObjectStore, upload_id: int) -> None:
    """
    Remove the record first, then the object.

    If the object delete fails only an orphan is left behind, which storage
    cleanup can find later; the reverse order could leave a record pointing
    at nothing.
    """
    key = await db.get_upload_key(upload_id)
    if key is None:
        raise NotFoundError("Upload not found")

    await db.delete_upload(upload_id)
    try:
        await store.delete_object(key)
    except ShortLinkError as error:
        logger.warning(f"Object delete failed, orphan left behind: {error.message}")


# =========================
# Storage reconciliation
# =========================
@action
async def scan_storage(reconciler: StorageReconciler) -> schemas.StorageScan:
    return await reconciler.scan()


@action
async def cleanup_storage(
    reconciler: StorageReconciler, keys: List[str]
) -> schemas.DeletionReport:
    return await reconciler.cleanup_orphans(keys)


# =========================
# Backup
# =========================
@action
async def export_backup(db: ScopedDB) -> Dict[str, Any]:
    envelope = await build_export_envelope(db)
    return envelope.model_dump(mode="json", by_alias=True)


@action
async def import_backup(db: ScopedDB, payload: Any) -> schemas.ImportResult:
    links = parse_import_payload(payload)
    return await import_links(db, links)


# =========================
# Public redirect
# =========================
@action
async def resolve_redirect(client: D1Client, slug: str) -> schemas.Link:
    link = await resolve_slug(client, slug)
    if link is None:
        raise NotFoundError("Link not found")
    if link.expires_at is not None and link.expires_at <= datetime.now(timezone.utc):
        raise NotFoundError("Link expired")

    try:
        await increment_clicks(client, link.id)
    except ShortLinkError as error:
        logger.warning(f"Click count not recorded for link {link.id}: {error.message}")
    return link
