from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Boolean,
    Text,
)

from app.core.database import Base

# Timestamps are integer epoch milliseconds, the format the remote store keeps.
# Users are owned by the external OAuth provider, so user_id is a plain text id.


# =========================
# Folder
# =========================
class Folder(Base):
    __tablename__ = "folders"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    icon = Column(String, nullable=False, server_default="folder")
    created_at = Column(Integer, nullable=False)


# =========================
# Link
# =========================
class Link(Base):
    """
    A short link. The slug is unique across every tenant because all slugs
    share one public URL namespace.
    """

    __tablename__ = "links"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    folder_id = Column(
        String, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True
    )

    original_url = Column(Text, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    is_custom = Column(Boolean, server_default="0")
    expires_at = Column(Integer, nullable=True)
    clicks = Column(Integer, server_default="0")

    # optional metadata filled in after creation
    meta_title = Column(Text)
    meta_description = Column(Text)
    meta_favicon = Column(Text)
    screenshot_url = Column(Text)
    note = Column(Text)

    created_at = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_links_user_created", "user_id", "created_at"),
        Index("idx_links_user_folder", "user_id", "folder_id"),
    )


# =========================
# Tag + link/tag join
# =========================
class Tag(Base):
    __tablename__ = "tags"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=False)
    created_at = Column(Integer, nullable=False)


class LinkTag(Base):
    __tablename__ = "link_tags"

    link_id = Column(
        Integer, ForeignKey("links.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id = Column(String, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


# =========================
# Upload (one row per stored object)
# =========================
class Upload(Base):
    __tablename__ = "uploads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)

    key = Column(String, nullable=False, unique=True)
    file_name = Column(String, nullable=False)
    file_type = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    public_url = Column(Text, nullable=False)

    created_at = Column(Integer, nullable=False)
