from typing import Annotated, List

from fastapi import APIRouter, Depends, status

from app.core import actions, schemas
from app.core.actions import unwrap
from app.core.config import settings
from app.core.screenshots import ScreenshotFetcher, get_screenshot_fetcher
from app.core.security import scoped_db_dep
from app.core.storage import ObjectStore, get_object_store

router = APIRouter(prefix="/links", tags=["Links"])

store_dep = Annotated[ObjectStore, Depends(get_object_store)]
fetcher_dep = Annotated[ScreenshotFetcher, Depends(get_screenshot_fetcher)]


# Create a short link (custom slug or generated)
@router.post("", response_model=schemas.Link, status_code=status.HTTP_201_CREATED)
async def create_link(link: schemas.LinkCreate, db: scoped_db_dep):
    return unwrap(await actions.create_link(db, link))


@router.get("", response_model=List[schemas.Link])
async def list_links(db: scoped_db_dep):
    return unwrap(await actions.list_links(db))


# Bulk fetch by ids; ids the caller does not own are left out
@router.post("/lookup", response_model=List[schemas.Link])
async def lookup_links(lookup: schemas.LinkLookup, db: scoped_db_dep):
    return unwrap(await actions.get_links_by_ids(db, lookup.ids))


@router.get("/{link_id}", response_model=schemas.Link)
async def get_link(link_id: int, db: scoped_db_dep):
    return unwrap(await actions.get_link(db, link_id))


@router.patch("/{link_id}", response_model=schemas.Link)
async def update_link(link_id: int, link: schemas.LinkUpdate, db: scoped_db_dep):
    return unwrap(await actions.update_link(db, link_id, link))


@router.patch("/{link_id}/note", response_model=schemas.Link)
async def update_link_note(link_id: int, body: schemas.LinkNoteUpdate, db: scoped_db_dep):
    return unwrap(await actions.update_link_note(db, link_id, body.note))


# Results pushed by the metadata scraper
@router.patch("/{link_id}/metadata", response_model=schemas.Link)
async def update_link_metadata(
    link_id: int, body: schemas.LinkMetadataUpdate, db: scoped_db_dep
):
    return unwrap(await actions.update_link_metadata(db, link_id, body))


# Copy a temporary screenshot URL into our own storage
@router.post("/{link_id}/screenshot", response_model=schemas.Link)
async def save_screenshot(
    link_id: int,
    body: schemas.ScreenshotSave,
    db: scoped_db_dep,
    store: store_dep,
    fetcher: fetcher_dep,
):
    return unwrap(
        await actions.save_screenshot(
            db,
            store,
            fetcher,
            link_id,
            body.url,
            settings.R2_PUBLIC_DOMAIN,
            settings.R2_USER_HASH_SALT,
        )
    )


@router.delete("/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_link(link_id: int, db: scoped_db_dep):
    unwrap(await actions.delete_link(db, link_id))


# =========================
# Tags on a link
# =========================
@router.put("/{link_id}/tags/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
async def add_tag(link_id: int, tag_id: str, db: scoped_db_dep):
    unwrap(await actions.add_tag_to_link(db, link_id, tag_id))


@router.delete("/{link_id}/tags/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_tag(link_id: int, tag_id: str, db: scoped_db_dep):
    unwrap(await actions.remove_tag_from_link(db, link_id, tag_id))
