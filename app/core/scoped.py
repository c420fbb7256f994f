"""
Tenant-scoped data access.

All user-owned reads and writes go through ScopedDB. The owner is bound once
per request in a Scope and injected into every statement, so no method here
accepts an owner id from the caller. The only unscoped operations are the
global slug predicates (slugs share one public namespace) and the public
redirect helpers at the bottom of the module, none of which return another
tenant's data to a scoped caller.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set

from sqlalchemy import bindparam, delete, insert, literal, select, update

from app.core import models, schemas
from app.core.database import D1Client, Row
from app.core.errors import NotFoundError, ValidationError
from app.core.schemas import now_millis, to_millis

logger = logging.getLogger(__name__)

# D1 binds at most 100 parameters per statement; one is reserved for the owner
BULK_FETCH_CHUNK_SIZE = 90

LINK_COLUMNS = tuple(models.Link.__table__.c)
FOLDER_COLUMNS = tuple(models.Folder.__table__.c)
TAG_COLUMNS = tuple(models.Tag.__table__.c)
UPLOAD_COLUMNS = tuple(models.Upload.__table__.c)

LINK_UPDATE_FIELDS = {
    "original_url",
    "folder_id",
    "expires_at",
    "screenshot_url",
}
LINK_METADATA_FIELDS = {"meta_title", "meta_description", "meta_favicon"}
FOLDER_UPDATE_FIELDS = {"name", "icon"}
TAG_UPDATE_FIELDS = {"name", "color"}


@dataclass(frozen=True)
class Scope:
    """Immutable tenant identity bound to a data-access instance."""

    owner_id: str

    def __post_init__(self):
        if not isinstance(self.owner_id, str) or not self.owner_id.strip():
            raise ValidationError("Scope requires a non-empty owner id")


def chunked(items: Sequence[Any], size: int) -> Iterator[List[Any]]:
    """Split a sequence into consecutive lists of at most ``size`` items."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def _first(rows: List[Row]) -> Optional[Row]:
    return rows[0] if rows else None


def _clean_fields(fields: Dict[str, Any], allowed: Set[str]) -> Dict[str, Any]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
    values = dict(fields)
    if isinstance(values.get("expires_at"), datetime):
        values["expires_at"] = to_millis(values["expires_at"])
    return values


class ScopedDB:
    """Data access bound to one owner. Constructed once per request."""

    def __init__(self, client: D1Client, scope: Scope):
        self._client = client
        self._scope = scope

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def _owner(self) -> str:
        return self._scope.owner_id

    # =========================
    # Links
    # =========================
    async def list_links(self) -> List[schemas.Link]:
        query = (
            select(models.Link)
            .where(models.Link.user_id == self._owner)
            .order_by(models.Link.created_at.desc())
        )
        rows = await self._client.execute(query)
        return [schemas.Link.model_validate(row) for row in rows]

    async def get_link(self, link_id: int) -> Optional[schemas.Link]:
        query = (
            select(models.Link)
            .where(models.Link.id == link_id, models.Link.user_id == self._owner)
            .limit(1)
        )
        row = _first(await self._client.execute(query))
        return schemas.Link.model_validate(row) if row else None

    async def get_links_by_ids(self, ids: Sequence[int]) -> List[schemas.Link]:
        """
        Fetch every owned link among ``ids``.

        The id list is split into chunks of BULK_FETCH_CHUNK_SIZE so no
        statement exceeds the store's parameter limit. Chunks run one after
        another; the result carries no ordering guarantee.
        """
        unique_ids = list(dict.fromkeys(ids))
        links = []
        for chunk in chunked(unique_ids, BULK_FETCH_CHUNK_SIZE):
            query = select(models.Link).where(
                models.Link.user_id == self._owner,
                models.Link.id.in_(
                    [bindparam(f"lookup_{i}", value) for i, value in enumerate(chunk)]
                ),
            )
            rows = await self._client.execute(query)
            links.extend(schemas.Link.model_validate(row) for row in rows)
        return links

    async def create_link(
        self,
        original_url: str,
        slug: str,
        is_custom: bool = False,
        folder_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        clicks: int = 0,
        created_at: Optional[datetime] = None,
        **extra: Any,
    ) -> schemas.Link:
        """
        Insert a link and return it with its store-assigned id.

        With a ``folder_id`` the row is inserted only if the folder is owned
        by this scope; otherwise NotFoundError is raised and nothing is
        written.
        """
        values = _clean_fields(extra, LINK_METADATA_FIELDS | {"screenshot_url", "note"})
        values.update(
            user_id=self._owner,
            folder_id=folder_id,
            original_url=original_url,
            slug=slug,
            is_custom=is_custom,
            expires_at=to_millis(expires_at),
            clicks=clicks,
            created_at=to_millis(created_at) or now_millis(),
        )

        stmt = insert(models.Link)
        if folder_id is None:
            stmt = stmt.values(**values)
        else:
            names = list(values)
            source = select(*[literal(values[name]).label(name) for name in names]).where(
                self._owns_folder(folder_id)
            )
            stmt = stmt.from_select(names, source)

        rows = await self._client.execute(stmt.returning(*LINK_COLUMNS))
        if not rows:
            raise NotFoundError("Folder not found")
        return schemas.Link.model_validate(rows[0])

    async def update_link(self, link_id: int, **fields: Any) -> Optional[schemas.Link]:
        """
        Update owned link fields. Returns None if absent or not owned.

        Moving the link into a folder outside this scope raises NotFoundError.
        """
        return await self._update_link(link_id, _clean_fields(fields, LINK_UPDATE_FIELDS))

    async def update_link_metadata(self, link_id: int, **fields: Any) -> Optional[schemas.Link]:
        return await self._update_link(link_id, _clean_fields(fields, LINK_METADATA_FIELDS))

    async def update_link_note(self, link_id: int, note: Optional[str]) -> Optional[schemas.Link]:
        return await self._update_link(link_id, {"note": note})

    async def update_link_screenshot(
        self, link_id: int, screenshot_url: Optional[str]
    ) -> Optional[schemas.Link]:
        return await self._update_link(link_id, {"screenshot_url": screenshot_url})

    async def rename_link(self, link_id: int, slug: str) -> Optional[schemas.Link]:
        """
        Change a link's slug; the only path that rewrites one after creation.

        Uniqueness is checked by the caller and enforced by the store.
        """
        return await self._update_link(link_id, {"slug": slug, "is_custom": True})

    async def _update_link(self, link_id: int, values: Dict[str, Any]) -> Optional[schemas.Link]:
        if not values:
            return await self.get_link(link_id)

        conditions = [models.Link.id == link_id, models.Link.user_id == self._owner]
        folder_id = values.get("folder_id")
        if folder_id is not None:
            conditions.append(self._owns_folder(folder_id))

        stmt = (
            update(models.Link)
            .where(*conditions)
            .values(**values)
            .returning(*LINK_COLUMNS)
        )
        row = _first(await self._client.execute(stmt))
        if row is None and folder_id is not None and await self.get_link(link_id) is not None:
            raise NotFoundError("Folder not found")
        return schemas.Link.model_validate(row) if row else None

    def _owns_folder(self, folder_id: str):
        return (
            select(models.Folder.id)
            .where(models.Folder.id == folder_id, models.Folder.user_id == self._owner)
            .exists()
        )

    async def delete_link(self, link_id: int) -> bool:
        """Delete an owned link and its tag associations in one atomic batch."""
        owned = select(models.Link.id).where(
            models.Link.id == link_id, models.Link.user_id == self._owner
        )
        results = await self._client.execute_many(
            [
                delete(models.LinkTag).where(models.LinkTag.link_id.in_(owned)),
                delete(models.Link)
                .where(models.Link.id == link_id, models.Link.user_id == self._owner)
                .returning(models.Link.id),
            ]
        )
        return len(results[1]) > 0

    # =========================
    # Global slug predicates
    # =========================
    async def slug_exists(self, slug: str) -> bool:
        """Whether any tenant already uses ``slug``."""
        query = select(models.Link.id).where(models.Link.slug == slug).limit(1)
        return len(await self._client.execute(query)) > 0

    async def slug_taken_by_other(self, slug: str, link_id: int) -> bool:
        """Whether ``slug`` is used by any link other than ``link_id``."""
        query = (
            select(models.Link.id)
            .where(models.Link.slug == slug, models.Link.id != link_id)
            .limit(1)
        )
        return len(await self._client.execute(query)) > 0

    # =========================
    # Folders
    # =========================
    async def list_folders(self) -> List[schemas.Folder]:
        query = (
            select(models.Folder)
            .where(models.Folder.user_id == self._owner)
            .order_by(models.Folder.created_at.desc())
        )
        rows = await self._client.execute(query)
        return [schemas.Folder.model_validate(row) for row in rows]

    async def get_folder(self, folder_id: str) -> Optional[schemas.Folder]:
        query = (
            select(models.Folder)
            .where(models.Folder.id == folder_id, models.Folder.user_id == self._owner)
            .limit(1)
        )
        row = _first(await self._client.execute(query))
        return schemas.Folder.model_validate(row) if row else None

    async def create_folder(
        self,
        name: str,
        icon: str = "folder",
        folder_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> schemas.Folder:
        stmt = (
            insert(models.Folder)
            .values(
                id=folder_id or str(uuid.uuid4()),
                user_id=self._owner,
                name=name,
                icon=icon,
                created_at=to_millis(created_at) or now_millis(),
            )
            .returning(*FOLDER_COLUMNS)
        )
        rows = await self._client.execute(stmt)
        return schemas.Folder.model_validate(rows[0])

    async def update_folder(self, folder_id: str, **fields: Any) -> Optional[schemas.Folder]:
        values = _clean_fields(fields, FOLDER_UPDATE_FIELDS)
        if not values:
            return await self.get_folder(folder_id)

        stmt = (
            update(models.Folder)
            .where(models.Folder.id == folder_id, models.Folder.user_id == self._owner)
            .values(**values)
            .returning(*FOLDER_COLUMNS)
        )
        row = _first(await self._client.execute(stmt))
        return schemas.Folder.model_validate(row) if row else None

    async def delete_folder(self, folder_id: str) -> bool:
        """Delete an owned folder; its links move back to the inbox."""
        results = await self._client.execute_many(
            [
                update(models.Link)
                .where(
                    models.Link.folder_id == folder_id,
                    models.Link.user_id == self._owner,
                )
                .values(folder_id=None),
                delete(models.Folder)
                .where(models.Folder.id == folder_id, models.Folder.user_id == self._owner)
                .returning(models.Folder.id),
            ]
        )
        return len(results[1]) > 0

    # =========================
    # Tags
    # =========================
    async def list_tags(self) -> List[schemas.Tag]:
        query = (
            select(models.Tag)
            .where(models.Tag.user_id == self._owner)
            .order_by(models.Tag.created_at.asc())
        )
        rows = await self._client.execute(query)
        return [schemas.Tag.model_validate(row) for row in rows]

    async def create_tag(
        self,
        name: str,
        color: str,
        tag_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> schemas.Tag:
        stmt = (
            insert(models.Tag)
            .values(
                id=tag_id or str(uuid.uuid4()),
                user_id=self._owner,
                name=name,
                color=color,
                created_at=to_millis(created_at) or now_millis(),
            )
            .returning(*TAG_COLUMNS)
        )
        rows = await self._client.execute(stmt)
        return schemas.Tag.model_validate(rows[0])

    async def update_tag(self, tag_id: str, **fields: Any) -> Optional[schemas.Tag]:
        values = _clean_fields(fields, TAG_UPDATE_FIELDS)
        if not values:
            query = select(models.Tag).where(
                models.Tag.id == tag_id, models.Tag.user_id == self._owner
            )
            row = _first(await self._client.execute(query))
            return schemas.Tag.model_validate(row) if row else None

        stmt = (
            update(models.Tag)
            .where(models.Tag.id == tag_id, models.Tag.user_id == self._owner)
            .values(**values)
            .returning(*TAG_COLUMNS)
        )
        row = _first(await self._client.execute(stmt))
        return schemas.Tag.model_validate(row) if row else None

    async def delete_tag(self, tag_id: str) -> bool:
        owned = select(models.Tag.id).where(
            models.Tag.id == tag_id, models.Tag.user_id == self._owner
        )
        results = await self._client.execute_many(
            [
                delete(models.LinkTag).where(models.LinkTag.tag_id.in_(owned)),
                delete(models.Tag)
                .where(models.Tag.id == tag_id, models.Tag.user_id == self._owner)
                .returning(models.Tag.id),
            ]
        )
        return len(results[1]) > 0

    async def list_link_tags(self) -> List[schemas.LinkTag]:
        query = (
            select(models.LinkTag.link_id, models.LinkTag.tag_id)
            .join(models.Link, models.Link.id == models.LinkTag.link_id)
            .where(models.Link.user_id == self._owner)
        )
        rows = await self._client.execute(query)
        return [schemas.LinkTag.model_validate(row) for row in rows]

    async def add_tag_to_link(self, link_id: int, tag_id: str) -> bool:
        """
        Attach an owned tag to an owned link. Idempotent.

        Returns False when either side is absent or belongs to another scope.
        """
        owned_pair = select(models.Link.id, models.Tag.id).where(
            models.Link.id == link_id,
            models.Link.user_id == self._owner,
            models.Tag.id == tag_id,
            models.Tag.user_id == self._owner,
        )
        check = self._owned_link_tag(link_id, tag_id)
        results = await self._client.execute_many(
            [
                insert(models.LinkTag)
                .prefix_with("OR IGNORE")
                .from_select(["link_id", "tag_id"], owned_pair),
                check,
            ]
        )
        return len(results[1]) > 0

    async def remove_tag_from_link(self, link_id: int, tag_id: str) -> bool:
        owned = select(models.Link.id).where(
            models.Link.id == link_id, models.Link.user_id == self._owner
        )
        stmt = (
            delete(models.LinkTag)
            .where(
                models.LinkTag.link_id == link_id,
                models.LinkTag.tag_id == tag_id,
                models.LinkTag.link_id.in_(owned),
            )
            .returning(models.LinkTag.link_id)
        )
        return len(await self._client.execute(stmt)) > 0

    def _owned_link_tag(self, link_id: int, tag_id: str):
        return (
            select(models.LinkTag.link_id)
            .join(models.Link, models.Link.id == models.LinkTag.link_id)
            .where(
                models.LinkTag.link_id == link_id,
                models.LinkTag.tag_id == tag_id,
                models.Link.user_id == self._owner,
            )
        )

    # =========================
    # Uploads
    # =========================
    async def list_uploads(self) -> List[schemas.Upload]:
        query = (
            select(models.Upload)
            .where(models.Upload.user_id == self._owner)
            .order_by(models.Upload.created_at.desc(), models.Upload.id.desc())
        )
        rows = await self._client.execute(query)
        return [schemas.Upload.model_validate(row) for row in rows]

    async def create_upload(
        self, key: str, file_name: str, file_type: str, file_size: int, public_url: str
    ) -> schemas.Upload:
        stmt = (
            insert(models.Upload)
            .values(
                user_id=self._owner,
                key=key,
                file_name=file_name,
                file_type=file_type,
                file_size=file_size,
                public_url=public_url,
                created_at=now_millis(),
            )
            .returning(*UPLOAD_COLUMNS)
        )
        rows = await self._client.execute(stmt)
        return schemas.Upload.model_validate(rows[0])

    async def delete_upload(self, upload_id: int) -> bool:
        stmt = (
            delete(models.Upload)
            .where(models.Upload.id == upload_id, models.Upload.user_id == self._owner)
            .returning(models.Upload.id)
        )
        return len(await self._client.execute(stmt)) > 0

    async def get_upload_key(self, upload_id: int) -> Optional[str]:
        query = (
            select(models.Upload.key)
            .where(models.Upload.id == upload_id, models.Upload.user_id == self._owner)
            .limit(1)
        )
        row = _first(await self._client.execute(query))
        return row["key"] if row else None

    # =========================
    # Reference sources for storage reconciliation
    # =========================
    async def list_upload_keys(self) -> Set[str]:
        query = select(models.Upload.key).where(models.Upload.user_id == self._owner)
        return {row["key"] for row in await self._client.execute(query)}

    async def list_screenshot_urls(self) -> List[str]:
        query = select(models.Link.screenshot_url).where(
            models.Link.user_id == self._owner,
            models.Link.screenshot_url.is_not(None),
        )
        return [row["screenshot_url"] for row in await self._client.execute(query)]


# =========================
# Public (unscoped) redirect helpers
# =========================
async def resolve_slug(client: D1Client, slug: str) -> Optional[schemas.Link]:
    query = select(models.Link).where(models.Link.slug == slug).limit(1)
    row = _first(await client.execute(query))
    return schemas.Link.model_validate(row) if row else None


async def increment_clicks(client: D1Client, link_id: int) -> None:
    stmt = (
        update(models.Link)
        .where(models.Link.id == link_id)
        .values(clicks=models.Link.clicks + 1)
    )
    await client.execute(stmt)
