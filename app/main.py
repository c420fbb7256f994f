import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from app.api.router import api_router
from app.core.config import settings
from app.core.database import D1Client, ensure_schema
from app.core.errors import ConfigurationError, ShortLinkError
from app.core.screenshots import ScreenshotFetcher
from app.core.storage import ObjectStore

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# Build the store clients once; dependents get them from app.state
@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        app.state.d1 = D1Client.from_settings(settings)
    except ConfigurationError as e:
        logger.warning(f"SQL store disabled: {e.message}")
        app.state.d1 = None

    try:
        app.state.object_store = ObjectStore.from_settings(settings)
    except ConfigurationError as e:
        logger.warning(f"Object storage disabled: {e.message}")
        app.state.object_store = None

    app.state.screenshot_fetcher = ScreenshotFetcher()

    # Create any missing tables (replaces a migration step)
    if app.state.d1 is not None and settings.AUTO_CREATE_SCHEMA:
        try:
            count = await ensure_schema(app.state.d1)
            logger.info(f"Schema ensured ({count} statements)")
        except ShortLinkError as e:
            logger.error(f"Schema setup failed during startup: {e.message}")

    yield

    if app.state.d1 is not None:
        await app.state.d1.aclose()
    await app.state.screenshot_fetcher.aclose()


app = FastAPI(title="Short Link Manager API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "database": getattr(app.state, "d1", None) is not None,
        "storage": getattr(app.state, "object_store", None) is not None,
    }
