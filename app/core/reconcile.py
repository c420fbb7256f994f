"""
Storage reconciliation.

The SQL store is the authoritative record of which objects are in use: every
row in ``uploads`` owns its key, and every link screenshot URL under the public
domain references one. The object store is listed independently. An object
that no record references is an orphan and may be deleted, but only after the
reference sets are re-read at deletion time.
"""

import asyncio
import hashlib
import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from app.core.errors import ShortLinkError, ValidationError
from app.core.schemas import (
    ClassifiedObject,
    DeletionReport,
    ReconciliationSummary,
    StorageScan,
    StoredObject,
)
from app.core.scoped import ScopedDB, chunked
from app.core.storage import MAX_DELETE_BATCH, ObjectStore

logger = logging.getLogger(__name__)

MAX_CLEANUP_KEYS = 5000
USER_HASH_LENGTH = 12


# =========================
# Pure helpers
# =========================
def build_public_url(public_domain: str, key: str) -> str:
    return f"{public_domain.rstrip('/')}/{key}"


def extract_key_from_url(url: str, public_domain: str) -> Optional[str]:
    """Strip the public domain from ``url``; None when the URL lives elsewhere."""
    if not url or not public_domain:
        return None
    prefix = f"{public_domain.rstrip('/')}/"
    if not url.startswith(prefix):
        return None
    return url[len(prefix) :] or None


def tenant_prefix(owner_id: str, salt: str) -> str:
    """Per-owner key namespace: salted SHA-256 of the owner id, shortened."""
    digest = hashlib.sha256(f"{salt}:{owner_id}".encode("utf-8")).hexdigest()
    return f"{digest[:USER_HASH_LENGTH]}/"


def extract_extension(file_name: str) -> str:
    _, dot, ext = file_name.rpartition(".")
    if not dot or not ext:
        return ""
    return ext.lower()


def generate_object_key(file_name: str, prefix: str, now: Optional[datetime] = None) -> str:
    """``{prefix}YYYYMMDD/{uuid}[.ext]`` with the date taken in UTC."""
    now = now or datetime.now(timezone.utc)
    base = f"{prefix}{now.strftime('%Y%m%d')}/{uuid.uuid4()}"
    ext = extract_extension(file_name)
    return f"{base}.{ext}" if ext else base


def classify_objects(
    objects: Iterable[StoredObject],
    upload_keys: Set[str],
    screenshot_keys: Set[str],
    public_domain: str,
) -> List[ClassifiedObject]:
    return [
        ClassifiedObject(
            key=obj.key,
            size=obj.size,
            last_modified=obj.last_modified,
            is_referenced=obj.key in upload_keys or obj.key in screenshot_keys,
            public_url=build_public_url(public_domain, obj.key),
        )
        for obj in objects
    ]


def compute_summary(files: Iterable[ClassifiedObject]) -> ReconciliationSummary:
    summary = ReconciliationSummary()
    for file in files:
        summary.total_files += 1
        summary.total_size += file.size
        if not file.is_referenced:
            summary.orphan_files += 1
            summary.orphan_size += file.size
    return summary


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    exponent = 0
    while size >= 1024 ** (exponent + 1) and exponent < len(units) - 1:
        exponent += 1
    if exponent == 0:
        return f"{size} B"
    return f"{size / 1024**exponent:.1f} {units[exponent]}"


# =========================
# Reconciler
# =========================
class StorageReconciler:
    """Reconciles one tenant's object-store prefix against its records."""

    def __init__(
        self,
        db: ScopedDB,
        store: ObjectStore,
        public_domain: str,
        prefix: str,
    ):
        if not prefix:
            raise ValidationError("Reconciliation requires a tenant prefix")
        self.db = db
        self.store = store
        self.public_domain = public_domain
        self.prefix = prefix

    async def collect_reference_keys(self) -> Tuple[Set[str], Set[str]]:
        """Return (upload keys, screenshot keys), read from the store concurrently."""
        upload_keys, screenshot_urls = await asyncio.gather(
            self.db.list_upload_keys(), self.db.list_screenshot_urls()
        )
        screenshot_keys = set()
        for url in screenshot_urls:
            key = extract_key_from_url(url, self.public_domain)
            if key:
                screenshot_keys.add(key)
        return upload_keys, screenshot_keys

    async def scan(self) -> StorageScan:
        objects, (upload_keys, screenshot_keys) = await asyncio.gather(
            self.store.list_objects(self.prefix), self.collect_reference_keys()
        )
        files = classify_objects(objects, upload_keys, screenshot_keys, self.public_domain)
        summary = compute_summary(files)
        logger.info(
            f"Scanned {summary.total_files} objects under {self.prefix}: "
            f"{summary.orphan_files} orphaned ({format_bytes(summary.orphan_size)})"
        )
        return StorageScan(files=files, summary=summary)

    async def delete_keys(self, keys: Sequence[str]) -> DeletionReport:
        """
        Delete exactly ``keys``, MAX_DELETE_BATCH at a time.

        Chunks run one after another. A chunk whose request fails counts all
        of its keys as errored and the remaining chunks still run; chunks that
        already succeeded are not rolled back.
        """
        report = DeletionReport(requested=len(keys))
        for chunk in chunked(list(keys), MAX_DELETE_BATCH):
            try:
                failed = await self.store.delete_objects(chunk)
            except ShortLinkError as e:
                logger.warning(f"Delete of {len(chunk)} objects failed: {e.message}")
                failed = list(chunk)
            report.failed_keys.extend(failed)

        report.errored = len(report.failed_keys)
        report.deleted = report.requested - report.errored
        return report

    async def cleanup_orphans(self, keys: Sequence[str]) -> DeletionReport:
        """
        Delete the given keys that are still orphans.

        The caller's list usually comes from an earlier scan, so each key is
        checked again against the tenant prefix and a fresh read of the
        reference sets. Anything else is reported as skipped.
        """
        if not keys:
            raise ValidationError("No keys provided")
        if len(keys) > MAX_CLEANUP_KEYS:
            raise ValidationError(f"Too many keys (max {MAX_CLEANUP_KEYS} per request)")

        upload_keys, screenshot_keys = await self.collect_reference_keys()
        confirmed = []
        for key in dict.fromkeys(keys):
            if not isinstance(key, str) or not key.startswith(self.prefix):
                continue
            if key in upload_keys or key in screenshot_keys:
                continue
            confirmed.append(key)

        report = await self.delete_keys(confirmed)
        report.skipped = len(keys) - len(confirmed)
        report.requested = len(keys)
        logger.info(
            f"Cleanup under {self.prefix}: {report.deleted} deleted, "
            f"{report.skipped} skipped, {report.errored} failed"
        )
        return report
