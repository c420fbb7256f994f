from typing import Any

from fastapi import APIRouter, Body

from app.core import actions, schemas
from app.core.actions import unwrap
from app.core.security import scoped_db_dep

router = APIRouter(prefix="/backup", tags=["Backup"])


# Envelope keys are camelCase, so the body is returned as-is
@router.get("/export")
async def export_backup(db: scoped_db_dep):
    return unwrap(await actions.export_backup(db))


# Accepts a full export envelope or a bare list of links
@router.post("/import", response_model=schemas.ImportResult)
async def import_backup(db: scoped_db_dep, payload: Any = Body(...)):
    return unwrap(await actions.import_backup(db, payload))
