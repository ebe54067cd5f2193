"""
Image search for featured and inline article images.

Providers: Pexels, Unsplash (both need an API key) and Openverse (open).
Searching is optional for the pipeline, so ``ImageService.search`` never
raises: a provider error is logged and the next provider is tried, and an
empty list means "publish without images".
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import aiohttp

from wpautopilot.config import (
    IMAGE_PROVIDER,
    IMAGE_TIMEOUT_SECONDS,
    PEXELS_API_KEY,
    UNSPLASH_ACCESS_KEY,
    USER_AGENT,
)
from wpautopilot.errors import UpstreamError

logger = logging.getLogger("image_service")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

DEFAULT_PER_PAGE = 5


@dataclass
class ImageResult:
    id: str
    url: str
    thumbnail_url: str
    width: int = 0
    height: int = 0
    title: str = ""
    description: str = ""
    photographer: str = ""
    source: str = ""
    license_name: str = ""
    license_url: str = ""
    requires_attribution: bool = False

    @property
    def alt_text(self) -> str:
        return self.title or self.description or "Article image"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImageFilters:
    page: int = 1
    per_page: int = DEFAULT_PER_PAGE
    orientation: Optional[str] = None  # landscape, portrait, square
    extra: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ImageProvider:
    name = "base"
    endpoint = ""

    def __init__(self, api_key: str = "") -> None:
        self.api_key = api_key

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def headers(self) -> dict[str, str]:
        return {"User-Agent": USER_AGENT, "Accept": "application/json"}

    def params(self, query: str, filters: ImageFilters) -> dict[str, Any]:
        raise NotImplementedError

    def parse(self, body: dict[str, Any]) -> list[ImageResult]:
        raise NotImplementedError

    async def search(
        self, session: aiohttp.ClientSession, query: str, filters: ImageFilters
    ) -> list[ImageResult]:
        params = {k: v for k, v in self.params(query, filters).items() if v is not None}
        async with session.get(self.endpoint, params=params, headers=self.headers()) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise UpstreamError(
                    f"{self.name} search failed: HTTP {resp.status} {text[:200]}",
                    status_code=resp.status,
                    provider=self.name,
                )
            body = await resp.json(content_type=None)
        return self.parse(body or {})


class PexelsProvider(ImageProvider):
    name = "pexels"
    endpoint = "https://api.pexels.com/v1/search"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["Authorization"] = self.api_key
        return headers

    def params(self, query, filters):
        return {
            "query": query,
            "page": filters.page,
            "per_page": filters.per_page,
            "orientation": filters.orientation,
        }

    def parse(self, body):
        results = []
        for photo in body.get("photos", []):
            src = photo.get("src", {})
            results.append(ImageResult(
                id=str(photo.get("id", "")),
                url=src.get("large2x") or src.get("original", ""),
                thumbnail_url=src.get("medium", ""),
                width=int(photo.get("width") or 0),
                height=int(photo.get("height") or 0),
                title=photo.get("alt", "") or "",
                photographer=photo.get("photographer", "") or "",
                source=self.name,
                license_name="Pexels License",
                license_url="https://www.pexels.com/license/",
            ))
        return results


class UnsplashProvider(ImageProvider):
    name = "unsplash"
    endpoint = "https://api.unsplash.com/search/photos"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["Authorization"] = f"Client-ID {self.api_key}"
        headers["Accept-Version"] = "v1"
        return headers

    def params(self, query, filters):
        orientation = filters.orientation
        if orientation == "square":
            orientation = "squarish"
        return {
            "query": query,
            "page": filters.page,
            "per_page": filters.per_page,
            "orientation": orientation,
        }

    def parse(self, body):
        results = []
        for photo in body.get("results", []):
            urls = photo.get("urls", {})
            results.append(ImageResult(
                id=str(photo.get("id", "")),
                url=urls.get("regular") or urls.get("full", ""),
                thumbnail_url=urls.get("thumb", ""),
                width=int(photo.get("width") or 0),
                height=int(photo.get("height") or 0),
                title=photo.get("alt_description", "") or "",
                description=photo.get("description", "") or "",
                photographer=(photo.get("user") or {}).get("name", ""),
                source=self.name,
                license_name="Unsplash License",
                license_url="https://unsplash.com/license",
            ))
        return results


class OpenverseProvider(ImageProvider):
    name = "openverse"
    endpoint = "https://api.openverse.org/v1/images/"

    @property
    def is_configured(self) -> bool:
        return True

    def params(self, query, filters):
        aspect = {"landscape": "wide", "portrait": "tall", "square": "square"}.get(
            filters.orientation or ""
        )
        return {
            "q": query,
            "page": filters.page,
            "page_size": filters.per_page,
            "aspect_ratio": aspect,
        }

    def parse(self, body):
        results = []
        for item in body.get("results", []):
            license_code = item.get("license", "") or ""
            version = item.get("license_version", "") or ""
            results.append(ImageResult(
                id=str(item.get("id", "")),
                url=item.get("url", "") or "",
                thumbnail_url=item.get("thumbnail", "") or "",
                width=int(item.get("width") or 0),
                height=int(item.get("height") or 0),
                title=item.get("title", "") or "",
                photographer=item.get("creator", "") or "",
                source=self.name,
                license_name=f"CC {license_code.upper()} {version}".strip(),
                license_url=item.get("license_url", "") or "",
                requires_attribution=license_code not in ("cc0", "pdm"),
            ))
        return results


# ---------------------------------------------------------------------------
# ImageService
# ---------------------------------------------------------------------------


class ImageService:
    """Searches the configured providers in order until one returns images."""

    def __init__(
        self,
        providers: Optional[list[ImageProvider]] = None,
        timeout: int = IMAGE_TIMEOUT_SECONDS,
    ) -> None:
        if providers is None:
            providers = [
                PexelsProvider(PEXELS_API_KEY),
                UnsplashProvider(UNSPLASH_ACCESS_KEY),
                OpenverseProvider(),
            ]
            if IMAGE_PROVIDER:
                providers = [p for p in providers if p.name == IMAGE_PROVIDER.lower()] or providers
        self.providers = providers
        self.timeout = timeout

    def available_providers(self) -> list[ImageProvider]:
        return [p for p in self.providers if p.is_configured]

    async def search(self, query: str, filters: Optional[ImageFilters] = None) -> list[ImageResult]:
        """Images for *query*; an empty list on any failure."""
        filters = filters or ImageFilters()
        providers = self.available_providers()
        if not providers:
            logger.warning("No image providers configured; articles will have no images")
            return []

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                for provider in providers:
                    try:
                        results = await provider.search(session, query, filters)
                    except (UpstreamError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                        logger.warning("Image search via %s failed for %r: %s", provider.name, query, exc)
                        continue
                    except (KeyError, TypeError, AttributeError) as exc:
                        logger.warning(
                            "Image search via %s returned a malformed response for %r: %s",
                            provider.name, query, exc,
                        )
                        continue
                    if results:
                        logger.debug("%s returned %d image(s) for %r", provider.name, len(results), query)
                        return results
        except aiohttp.ClientError as exc:
            logger.warning("Image search session failed for %r: %s", query, exc)
        return []

    async def download(self, url: str) -> tuple[bytes, str]:
        """Fetch image bytes and content type. Raises UpstreamError on failure."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": USER_AGENT}) as session:
                async with session.get(url) as resp:
                    if resp.status >= 400:
                        raise UpstreamError(
                            f"Image download failed: HTTP {resp.status}",
                            status_code=resp.status,
                            provider="image",
                        )
                    content_type = resp.headers.get("Content-Type", "image/jpeg").split(";")[0]
                    return await resp.read(), content_type
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamError(f"Image download failed: {exc}", provider="image") from exc


_image_service_instance: Optional[ImageService] = None


def get_image_service() -> ImageService:
    global _image_service_instance
    if _image_service_instance is None:
        _image_service_instance = ImageService()
    return _image_service_instance
