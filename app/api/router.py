from fastapi import APIRouter
from app.api.endpoints import backup, folders, links, redirect, storage, tags, uploads

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(links.router)
api_router.include_router(folders.router)
api_router.include_router(tags.router)
api_router.include_router(uploads.router)
api_router.include_router(storage.router)
api_router.include_router(backup.router)
api_router.include_router(redirect.router)
