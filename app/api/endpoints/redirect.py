from typing import Annotated

from fastapi import APIRouter, Depends, status
from fastapi.responses import RedirectResponse

from app.core import actions
from app.core.actions import unwrap
from app.core.database import D1Client, get_client

router = APIRouter(tags=["Redirect"])


# Public: no token, slugs share one namespace across every user
@router.get("/r/{slug}")
async def follow_short_link(slug: str, client: Annotated[D1Client, Depends(get_client)]):
    link = unwrap(await actions.resolve_redirect(client, slug))
    return RedirectResponse(link.original_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
