import httpx
import pytest
from httpx import AsyncClient

from app.core.config import settings
from app.core.errors import StorageError, ValidationError
from app.core.reconcile import tenant_prefix
from app.core.screenshots import ScreenshotFetcher

OWNER_ID = "user-a"
SHOT_URL = "https://shots.example.test/tmp/abc.png"


async def make_link(client, headers, slug):
    response = await client.post(
        "/links",
        json={"original_url": "https://example.com", "custom_slug": slug},
        headers=headers,
    )
    return response.json()


@pytest.mark.asyncio
async def test_fetch_returns_body_and_type(screenshot_fetcher, image_host):
    """The body and declared content type come back"""
    image_host.add(SHOT_URL, body=b"jpeg-bytes", content_type="image/jpeg")
    image = await screenshot_fetcher.fetch(SHOT_URL)
    assert image.body == b"jpeg-bytes"
    assert image.content_type == "image/jpeg"


@pytest.mark.asyncio
async def test_fetch_refuses_non_https(screenshot_fetcher, image_host):
    """Plain http and junk URLs are never requested"""
    for url in ("http://shots.example.test/a.png", "file:///etc/passwd", "not a url"):
        with pytest.raises(ValidationError):
            await screenshot_fetcher.fetch(url)
    assert image_host.requests == []


@pytest.mark.asyncio
async def test_fetch_error_status(screenshot_fetcher):
    """A non-success answer is a storage failure"""
    with pytest.raises(StorageError):
        await screenshot_fetcher.fetch("https://shots.example.test/missing.png")


@pytest.mark.asyncio
async def test_fetch_enforces_size_cap(image_host):
    """Oversized bodies are refused, declared or streamed"""
    image_host.add(SHOT_URL, body=b"x" * 32)
    fetcher = ScreenshotFetcher(max_bytes=16, transport=httpx.MockTransport(image_host.handler))
    with pytest.raises(ValidationError):
        await fetcher.fetch(SHOT_URL)
    await fetcher.aclose()

    async def chunks():
        for _ in range(4):
            yield b"y" * 8

    streamed = ScreenshotFetcher(
        max_bytes=16,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=chunks())),
    )
    with pytest.raises(ValidationError):
        await streamed.fetch(SHOT_URL)
    await streamed.aclose()


@pytest.mark.asyncio
async def test_save_screenshot_stores_and_links(
    client: AsyncClient, auth_headers, image_host, fake_s3
):
    """The image lands under the owner's prefix and the link points at it"""
    image_host.add(SHOT_URL, body=b"png-bytes")
    link = await make_link(client, auth_headers, "shot1")

    response = await client.post(
        f"/links/{link['id']}/screenshot", json={"url": SHOT_URL}, headers=auth_headers
    )
    assert response.status_code == 200
    screenshot_url = response.json()["screenshot_url"]

    prefix = f"{settings.R2_PUBLIC_DOMAIN}/{tenant_prefix(OWNER_ID, settings.R2_USER_HASH_SALT)}"
    assert screenshot_url.startswith(prefix)
    assert screenshot_url.endswith(".png")

    key = screenshot_url[len(settings.R2_PUBLIC_DOMAIN) + 1 :]
    assert fake_s3.objects[key]["Size"] == len(b"png-bytes")
    assert fake_s3.objects[key]["ContentType"] == "image/png"


@pytest.mark.asyncio
async def test_saved_screenshot_is_not_an_orphan(
    client: AsyncClient, auth_headers, image_host
):
    """Storage scan counts the stored screenshot as referenced"""
    image_host.add(SHOT_URL)
    link = await make_link(client, auth_headers, "shot2")
    await client.post(
        f"/links/{link['id']}/screenshot", json={"url": SHOT_URL}, headers=auth_headers
    )

    scan = (await client.get("/storage/scan", headers=auth_headers)).json()
    assert scan["summary"]["total_files"] == 1
    assert scan["summary"]["orphan_files"] == 0


@pytest.mark.asyncio
async def test_save_screenshot_for_foreign_link(
    client: AsyncClient, auth_headers, auth_headers_other, image_host, fake_s3
):
    """Another tenant's link is not found and nothing is downloaded or stored"""
    image_host.add(SHOT_URL)
    link = await make_link(client, auth_headers, "shot3")

    response = await client.post(
        f"/links/{link['id']}/screenshot", json={"url": SHOT_URL}, headers=auth_headers_other
    )
    assert response.status_code == 404
    assert image_host.requests == []
    assert fake_s3.objects == {}


@pytest.mark.asyncio
async def test_save_screenshot_failures(client: AsyncClient, auth_headers, fake_s3):
    """Bad URLs are a 400, an unreachable image a 502"""
    link = await make_link(client, auth_headers, "shot4")

    response = await client.post(
        f"/links/{link['id']}/screenshot",
        json={"url": "http://shots.example.test/a.png"},
        headers=auth_headers,
    )
    assert response.status_code == 400

    response = await client.post(
        f"/links/{link['id']}/screenshot",
        json={"url": "https://shots.example.test/gone.png"},
        headers=auth_headers,
    )
    assert response.status_code == 502
    assert fake_s3.objects == {}
