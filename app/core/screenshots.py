import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx
from fastapi import HTTPException, Request, status

from app.core.errors import ConfigurationError, StorageError, TransientError, ValidationError

logger = logging.getLogger(__name__)

MAX_SCREENSHOT_BYTES = 10 * 1024 * 1024
DOWNLOAD_TIMEOUT_SECONDS = 15.0
DEFAULT_CONTENT_TYPE = "image/png"


@dataclass(frozen=True)
class DownloadedImage:
    body: bytes
    content_type: str


class ScreenshotFetcher:
    """
    Downloads a screenshot image from a remote HTTPS URL.

    Only https URLs are fetched and redirects are not followed. Bodies larger
    than ``max_bytes`` are refused, whether the size is declared up front or
    only discovered while streaming.
    """

    def __init__(
        self,
        timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
        max_bytes: int = MAX_SCREENSHOT_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._transport = transport
        self._http = self._build_http()

    def _build_http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch(self, url: str) -> DownloadedImage:
        try:
            parsed = urlparse(url)
        except ValueError:
            raise ValidationError("Invalid screenshot URL") from None
        if parsed.scheme != "https" or not parsed.netloc:
            raise ValidationError("Only HTTPS URLs are allowed")

        try:
            async with self._http.stream("GET", url) as response:
                if not response.is_success:
                    logger.warning(f"Screenshot download returned HTTP {response.status_code}")
                    raise StorageError("Failed to download screenshot")

                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise ValidationError("Screenshot too large")

                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        raise ValidationError("Screenshot too large")

                content_type = response.headers.get("content-type") or DEFAULT_CONTENT_TYPE
        except httpx.TimeoutException:
            logger.warning(f"Screenshot download timed out after {self.timeout}s")
            raise TransientError("Screenshot download timed out") from None
        except httpx.HTTPError as error:
            logger.warning(f"Screenshot download failed: {error!r}")
            raise TransientError("Failed to download screenshot") from None

        return DownloadedImage(body=bytes(body), content_type=content_type)


def get_screenshot_fetcher(request: Request) -> ScreenshotFetcher:
    fetcher = getattr(request.app.state, "screenshot_fetcher", None)
    if fetcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ConfigurationError.default_message,
        )
    return fetcher
