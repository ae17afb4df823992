from __future__ import annotations

import aiohttp

from app.capabilities.base import FetchedImage, FetchError

DEFAULT_HTTP_HEADERS = {
    "User-Agent": (
        "EditForgeWorker/1.0 (+https://example.com; contact=ops@example.com)"
    ),
    "Accept": "image/*,application/octet-stream;q=0.9,*/*;q=0.8",
}
DEFAULT_MIME_TYPE = "image/jpeg"


class HttpImageFetcher:
    def __init__(self, http: aiohttp.ClientSession) -> None:
        self._http = http

    async def fetch_image(self, url: str) -> FetchedImage:
        try:
            async with self._http.get(url, headers=DEFAULT_HTTP_HEADERS) as response:
                if response.status >= 400:
                    raise FetchError(f"Failed to fetch image: status={response.status}")
                data = await response.read()
                content_type = response.headers.get("Content-Type")
        except aiohttp.ClientError as exc:
            raise FetchError(f"Failed to fetch image: {exc}") from exc

        mime_type = (content_type or DEFAULT_MIME_TYPE).split(";")[0].strip()
        return FetchedImage(data=data, mime_type=mime_type or DEFAULT_MIME_TYPE)
