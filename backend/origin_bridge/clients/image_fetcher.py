"""HTTP transport for images published by the Origin image server."""

import logging
from typing import Optional

import aiohttp

from origin_bridge.clients.origin_protocol import ImageDownloadError, image_url

logger = logging.getLogger(__name__)

IMAGE_HEADERS = {"Cache-Control": "no-cache", "Accept": "*/*"}


class ImageFetcher:
    """Downloads image files referenced by ``NewImageReady`` notifications.

    No timeout is applied: TIFF snapshots can be large and the image server
    is on the local network.
    """

    def __init__(self):
        self._session: Optional[aiohttp.ClientSession] = None

    async def fetch(self, host: str, remote_path: str) -> bytes:
        """Download one image.

        Args:
            host: Telescope host
            remote_path: File path exactly as reported by the telescope

        Returns:
            Raw image bytes

        Raises:
            ImageDownloadError: On HTTP or network failure
        """
        url = image_url(host, remote_path)
        logger.debug(f"Downloading: {url}")

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))

        try:
            async with self._session.get(url, headers=IMAGE_HEADERS) as response:
                response.raise_for_status()
                return await response.read()
        except aiohttp.ClientResponseError as e:
            raise ImageDownloadError(f"HTTP {e.status} for {url}: {e.message}")
        except (aiohttp.ClientError, OSError) as e:
            raise ImageDownloadError(f"Download of {url} failed: {e}")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
