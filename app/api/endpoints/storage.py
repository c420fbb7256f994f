from typing import Annotated

from fastapi import APIRouter, Depends

from app.core import actions, schemas
from app.core.actions import unwrap
from app.core.config import settings
from app.core.reconcile import StorageReconciler, tenant_prefix
from app.core.security import scoped_db_dep
from app.core.storage import ObjectStore, get_object_store

router = APIRouter(prefix="/storage", tags=["Storage"])


# Each caller only ever reconciles their own key namespace
def get_reconciler(
    db: scoped_db_dep, store: Annotated[ObjectStore, Depends(get_object_store)]
) -> StorageReconciler:
    return StorageReconciler(
        db,
        store,
        public_domain=settings.R2_PUBLIC_DOMAIN,
        prefix=tenant_prefix(db.scope.owner_id, settings.R2_USER_HASH_SALT),
    )


reconciler_dep = Annotated[StorageReconciler, Depends(get_reconciler)]


@router.get("/scan", response_model=schemas.StorageScan)
async def scan_storage(reconciler: reconciler_dep):
    return unwrap(await actions.scan_storage(reconciler))


@router.post("/cleanup", response_model=schemas.DeletionReport)
async def cleanup_storage(body: schemas.CleanupRequest, reconciler: reconciler_dep):
    return unwrap(await actions.cleanup_storage(reconciler, body.keys))
