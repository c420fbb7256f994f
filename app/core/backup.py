import logging
from datetime import datetime, timezone
from typing import Any, List

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ConflictError, ValidationError
from app.core.schemas import (
    ExportedFolder,
    ExportedLink,
    ExportedLinkTag,
    ExportedTag,
    ExportEnvelope,
    ImportResult,
    is_valid_url,
)
from app.core.scoped import ScopedDB
from app.core.slugs import is_valid_slug

logger = logging.getLogger(__name__)

BACKUP_SCHEMA_VERSION = 2
MAX_IMPORT_LINKS = 5000


async def build_export_envelope(db: ScopedDB) -> ExportEnvelope:
    """Snapshot everything the scope owns."""
    links = await db.list_links()
    folders = await db.list_folders()
    tags = await db.list_tags()
    link_tags = await db.list_link_tags()

    return ExportEnvelope(
        schema_version=BACKUP_SCHEMA_VERSION,
        exported_at=datetime.now(timezone.utc),
        links=[ExportedLink.model_validate(link.model_dump()) for link in links],
        folders=[ExportedFolder.model_validate(f.model_dump()) for f in folders],
        tags=[ExportedTag.model_validate(t.model_dump()) for t in tags],
        link_tags=[ExportedLinkTag.model_validate(lt.model_dump()) for lt in link_tags],
    )


def parse_import_payload(payload: Any) -> List[ExportedLink]:
    """
    Accept a full export envelope or a bare list of links.

    Raises ValidationError naming the first bad entry (1-indexed).
    """
    if isinstance(payload, dict):
        payload = payload.get("links")

    if not isinstance(payload, list):
        raise ValidationError("Import data must be a list of links")
    if not payload:
        raise ValidationError("Import data is empty")
    if len(payload) > MAX_IMPORT_LINKS:
        raise ValidationError(f"Too many links (max {MAX_IMPORT_LINKS} per import)")

    links = []
    for index, entry in enumerate(payload, start=1):
        if not isinstance(entry, dict):
            raise ValidationError(f"Entry #{index} is not an object")
        try:
            link = ExportedLink.model_validate(entry)
        except PydanticValidationError:
            raise ValidationError(f"Entry #{index} is missing originalUrl or slug") from None
        if not link.original_url or not link.slug:
            raise ValidationError(f"Entry #{index} is missing originalUrl or slug")
        if not is_valid_url(link.original_url):
            raise ValidationError(f"Entry #{index} has an invalid originalUrl")
        if not is_valid_slug(link.slug):
            raise ValidationError(f"Entry #{index} has an invalid or reserved slug")
        links.append(link)
    return links


async def import_links(db: ScopedDB, links: List[ExportedLink]) -> ImportResult:
    """Create every link whose slug is still free; the rest are skipped."""
    created = 0
    skipped = 0

    for link in links:
        if await db.slug_exists(link.slug):
            skipped += 1
            continue
        try:
            await db.create_link(
                original_url=link.original_url,
                slug=link.slug,
                is_custom=link.is_custom,
                clicks=link.clicks,
                created_at=link.created_at,
                expires_at=link.expires_at,
            )
        except ConflictError:
            # Taken between the check and the insert
            skipped += 1
            continue
        created += 1

    logger.info(f"Imported {created} links, skipped {skipped}")
    return ImportResult(created=created, skipped=skipped)
