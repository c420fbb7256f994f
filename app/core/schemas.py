from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.core.errors import ShortLinkError

T = TypeVar("T")


# =========================
# Epoch-millisecond helpers
# =========================
def from_millis(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def to_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def now_millis() -> int:
    return to_millis(datetime.now(timezone.utc))


def is_valid_url(value: str) -> bool:
    """Absolute http(s) URL with a host."""
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class StoreRecord(BaseModel):
    """A row from the remote store, with epoch-ms columns turned into datetimes."""

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "expires_at", mode="before", check_fields=False)
    @classmethod
    def _millis_to_datetime(cls, value):
        return from_millis(value)


# =========================
# LINK
# =========================
class Link(StoreRecord):
    id: int
    folder_id: Optional[str] = None
    original_url: str
    slug: str
    is_custom: bool = False
    expires_at: Optional[datetime] = None
    clicks: int = 0
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_favicon: Optional[str] = None
    screenshot_url: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    @field_validator("is_custom", "clicks", mode="before")
    @classmethod
    def _null_to_default(cls, value, info):
        if value is None:
            return False if info.field_name == "is_custom" else 0
        return value


class LinkCreate(BaseModel):
    original_url: str = Field(min_length=1, max_length=2048)
    custom_slug: Optional[str] = None
    folder_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class LinkUpdate(BaseModel):
    original_url: Optional[str] = Field(default=None, max_length=2048)
    folder_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    slug: Optional[str] = None
    screenshot_url: Optional[str] = None


class LinkNoteUpdate(BaseModel):
    note: Optional[str] = Field(default=None, max_length=5000)


# Written by the external metadata scraper
class LinkMetadataUpdate(BaseModel):
    meta_title: Optional[str] = Field(default=None, max_length=500)
    meta_description: Optional[str] = Field(default=None, max_length=2000)
    meta_favicon: Optional[str] = Field(default=None, max_length=2048)


class ScreenshotSave(BaseModel):
    url: str = Field(min_length=1, max_length=2048)


class LinkLookup(BaseModel):
    ids: List[int] = Field(max_length=1000)


# =========================
# FOLDER
# =========================
class Folder(StoreRecord):
    id: str
    name: str
    icon: str = "folder"
    created_at: datetime


class FolderCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    icon: str = "folder"


class FolderUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    icon: Optional[str] = None


# =========================
# TAG
# =========================
class Tag(StoreRecord):
    id: str
    name: str
    color: str
    created_at: datetime


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=30)
    color: str = "slate"


class TagUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=30)
    color: Optional[str] = None


class LinkTag(BaseModel):
    link_id: int
    tag_id: str


# =========================
# UPLOAD
# =========================
MAX_FILE_SIZE = 10 * 1024 * 1024


class Upload(StoreRecord):
    id: int
    key: str
    file_name: str
    file_type: str
    file_size: int
    public_url: str
    created_at: datetime


class UploadRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    file_type: str = Field(min_length=1, max_length=255)
    file_size: int = Field(gt=0, le=MAX_FILE_SIZE)


class PresignedUpload(BaseModel):
    upload_url: str
    public_url: str
    key: str


class UploadCreate(BaseModel):
    key: str = Field(min_length=1)
    file_name: str = Field(min_length=1, max_length=255)
    file_type: str = Field(min_length=1, max_length=255)
    file_size: int = Field(gt=0, le=MAX_FILE_SIZE)
    public_url: str = Field(min_length=1)


# =========================
# STORAGE RECONCILIATION
# =========================
class StoredObject(BaseModel):
    key: str
    size: int
    last_modified: str = ""


class ClassifiedObject(StoredObject):
    is_referenced: bool
    public_url: str


class ReconciliationSummary(BaseModel):
    total_files: int = 0
    total_size: int = 0
    orphan_files: int = 0
    orphan_size: int = 0


class StorageScan(BaseModel):
    files: List[ClassifiedObject]
    summary: ReconciliationSummary


class CleanupRequest(BaseModel):
    keys: List[str]


class DeletionReport(BaseModel):
    requested: int = 0
    deleted: int = 0
    errored: int = 0
    skipped: int = 0
    failed_keys: List[str] = []


# =========================
# EXPORT / IMPORT ENVELOPE
# =========================
class EnvelopeModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportedLink(EnvelopeModel):
    id: Optional[int] = None
    original_url: str
    slug: str
    is_custom: bool = False
    clicks: int = 0
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    folder_id: Optional[str] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_favicon: Optional[str] = None
    screenshot_url: Optional[str] = None
    note: Optional[str] = None


class ExportedFolder(EnvelopeModel):
    id: str
    name: str
    icon: str = "folder"
    created_at: datetime


class ExportedTag(EnvelopeModel):
    id: str
    name: str
    color: str
    created_at: datetime


class ExportedLinkTag(EnvelopeModel):
    link_id: int
    tag_id: str


class ExportEnvelope(EnvelopeModel):
    schema_version: int
    exported_at: datetime
    links: List[ExportedLink] = []
    folders: List[ExportedFolder] = []
    tags: List[ExportedTag] = []
    link_tags: List[ExportedLinkTag] = []


class ImportResult(BaseModel):
    created: int
    skipped: int


# =========================
# OUTCOME (public boundary)
# =========================
class Outcome(BaseModel, Generic[T]):
    """Either a result or a short, non-leaking error message."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "Outcome":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ShortLinkError) -> "Outcome":
        return cls(success=False, error=error.message, code=error.code)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
