from typing import List

from fastapi import APIRouter, status

from app.core import actions, schemas
from app.core.actions import unwrap
from app.core.security import scoped_db_dep

router = APIRouter(prefix="/folders", tags=["Folders"])


@router.post("", response_model=schemas.Folder, status_code=status.HTTP_201_CREATED)
async def create_folder(folder: schemas.FolderCreate, db: scoped_db_dep):
    return unwrap(await actions.create_folder(db, folder))


@router.get("", response_model=List[schemas.Folder])
async def list_folders(db: scoped_db_dep):
    return unwrap(await actions.list_folders(db))


@router.patch("/{folder_id}", response_model=schemas.Folder)
async def update_folder(folder_id: str, folder: schemas.FolderUpdate, db: scoped_db_dep):
    return unwrap(await actions.update_folder(db, folder_id, folder))


# Links inside the folder are kept and moved back to the inbox
@router.delete("/{folder_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_folder(folder_id: str, db: scoped_db_dep):
    unwrap(await actions.delete_folder(db, folder_id))
