from typing import List

from fastapi import APIRouter, status

from app.core import actions, schemas
from app.core.actions import unwrap
from app.core.security import scoped_db_dep

router = APIRouter(prefix="/tags", tags=["Tags"])


@router.post("", response_model=schemas.Tag, status_code=status.HTTP_201_CREATED)
async def create_tag(tag: schemas.TagCreate, db: scoped_db_dep):
    return unwrap(await actions.create_tag(db, tag))


@router.get("", response_model=List[schemas.Tag])
async def list_tags(db: scoped_db_dep):
    return unwrap(await actions.list_tags(db))


@router.patch("/{tag_id}", response_model=schemas.Tag)
async def update_tag(tag_id: str, tag: schemas.TagUpdate, db: scoped_db_dep):
    return unwrap(await actions.update_tag(db, tag_id, tag))


@router.delete("/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tag(tag_id: str, db: scoped_db_dep):
    unwrap(await actions.delete_tag(db, tag_id))
