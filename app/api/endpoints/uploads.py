from typing import Annotated, List

from fastapi import APIRouter, Depends, status

from app.core import actions, schemas
from app.core.actions import unwrap
from app.core.config import settings
from app.core.security import scoped_db_dep
from app.core.storage import ObjectStore, get_object_store

router = APIRouter(prefix="/uploads", tags=["Uploads"])

store_dep = Annotated[ObjectStore, Depends(get_object_store)]


# Step 1: get a short-lived URL the browser uploads to directly
@router.post("/presign", response_model=schemas.PresignedUpload)
async def presign_upload(
    upload: schemas.UploadRequest, db: scoped_db_dep, store: store_dep
):
    return unwrap(
        await actions.presign_upload(
            db, store, upload, settings.R2_PUBLIC_DOMAIN, settings.R2_USER_HASH_SALT
        )
    )


# Step 2: record the finished upload
@router.post("", response_model=schemas.Upload, status_code=status.HTTP_201_CREATED)
async def record_upload(upload: schemas.UploadCreate, db: scoped_db_dep):
    return unwrap(await actions.record_upload(db, upload, settings.R2_USER_HASH_SALT))


@router.get("", response_model=List[schemas.Upload])
async def list_uploads(db: scoped_db_dep):
    return unwrap(await actions.list_uploads(db))


@router.delete("/{upload_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_upload(upload_id: int, db: scoped_db_dep, store: store_dep):
    unwrap(await actions.delete_upload(db, store, upload_id))
