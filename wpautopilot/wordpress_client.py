"""
WordPress REST API client used by the publish adapter.

One client per site, authenticated with a WordPress Application Password
over HTTP Basic auth. Requests are made exactly once: a network error,
timeout or non-2xx response raises a ``WordPressError`` carrying the HTTP
status, and the caller decides what the failure means for the job.

Usage:
    from wpautopilot.wordpress_client import SiteConfig, WordPressClient

    config = SiteConfig(site_id="abc", url="https://example.com",
                        wp_user="editor", app_password="abcd efgh ijkl")
    async with WordPressClient(config) as client:
        post = await client.create_post("Title", "<p>Body</p>", status="draft")
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from wpautopilot.config import USER_AGENT, WP_TIMEOUT_SECONDS
from wpautopilot.errors import UpstreamError

logger = logging.getLogger("wordpress_client")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

WP_MAX_PER_PAGE = 100


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WordPressError(UpstreamError):
    """Base exception for WordPress API errors."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        self.response_body = response_body
        super().__init__(message, status_code=status_code, provider="wordpress")


class AuthenticationError(WordPressError):
    """Raised on 401/403 responses."""
    pass


class NotFoundError(WordPressError):
    """Raised on 404 responses."""
    pass


class RateLimitError(WordPressError):
    """Raised on 429 responses."""
    pass


class SiteNotConfiguredError(WordPressError):
    """Raised when a site lacks credentials."""
    pass


# ---------------------------------------------------------------------------
# SiteConfig dataclass
# ---------------------------------------------------------------------------


@dataclass
class SiteConfig:
    """Connection details for a single WordPress site."""

    site_id: str
    url: str
    wp_user: str = ""
    app_password: str = ""

    def __post_init__(self) -> None:
        # WordPress displays application passwords in groups of four
        self.app_password = re.sub(r"\s+", "", self.app_password or "")
        self.url = (self.url or "").rstrip("/")

    @property
    def base_url(self) -> str:
        """WP REST API root URL."""
        return f"{self.url}/wp-json"

    @property
    def api_url(self) -> str:
        """WP REST API v2 base URL."""
        return f"{self.url}/wp-json/wp/v2"

    @property
    def auth_header(self) -> str:
        """Base64-encoded Basic auth header value."""
        if not self.wp_user or not self.app_password:
            return ""
        credentials = f"{self.wp_user}:{self.app_password}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    @property
    def is_configured(self) -> bool:
        """Whether this site has credentials for API access."""
        return bool(self.wp_user and self.app_password)

    def __repr__(self) -> str:
        configured = "configured" if self.is_configured else "no-creds"
        return f"SiteConfig({self.site_id!r}, {self.url!r}, {configured})"


def _slugify_filename(title: str, extension: str) -> str:
    stem = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-") or "image"
    return f"{stem[:80]}.{extension}"


# ---------------------------------------------------------------------------
# WordPressClient
# ---------------------------------------------------------------------------


class WordPressClient:
    """
    Async WordPress REST API client for a single site.

    Parameters
    ----------
    config : SiteConfig
        Site URL and credentials.
    timeout : int
        Request timeout in seconds. Default ``WP_TIMEOUT_SECONDS``.
    """

    def __init__(self, config: SiteConfig, timeout: int = WP_TIMEOUT_SECONDS):
        self.config = config
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._categories_cache: Optional[List[Dict[str, Any]]] = None

    # -- Session management -------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
            }
            if self.config.auth_header:
                headers["Authorization"] = self.config.auth_header

            connector = aiohttp.TCPConnector(limit=10, ttl_dns_cache=300)
            timeout_config = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(
                headers=headers,
                connector=connector,
                timeout=timeout_config,
            )
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -- Core HTTP ----------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_data: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any, Dict[str, str]]:
        """
        Make a single HTTP request.

        Returns
        -------
        tuple of (status_code, response_json_or_text, response_headers)

        Raises
        ------
        AuthenticationError
            On 401 or 403 responses.
        NotFoundError
            On 404 responses.
        RateLimitError
            On 429 responses.
        WordPressError
            On other non-2xx responses, network errors and timeouts.
        """
        if not self.config.is_configured:
            raise SiteNotConfiguredError(
                f"Site {self.config.site_id!r} ({self.config.url}) has no credentials configured"
            )

        session = await self._get_session()
        logger.debug("API %s %s site=%s", method.upper(), url, self.config.site_id)

        kwargs: Dict[str, Any] = {}
        if json_data is not None:
            kwargs["json"] = json_data
        if data is not None:
            kwargs["data"] = data
        if headers is not None:
            kwargs["headers"] = headers
        if params is not None:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}

        try:
            async with session.request(method, url, **kwargs) as resp:
                status = resp.status
                resp_headers = dict(resp.headers)

                # Try to parse JSON, fall back to text
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError):
                    body = await resp.text()
        except asyncio.TimeoutError as exc:
            raise WordPressError(
                f"Request to {self.config.url} timed out after {self.timeout}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise WordPressError(
                f"Network error for {self.config.site_id} ({self.config.url}): {exc}"
            ) from exc

        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed for {self.config.url}: HTTP {status}",
                status_code=status,
                response_body=str(body),
            )
        if status == 404:
            raise NotFoundError(
                f"Resource not found: {url}",
                status_code=404,
                response_body=str(body),
            )
        if status == 429:
            raise RateLimitError(
                f"Rate limited by {self.config.url}",
                status_code=429,
                response_body=str(body),
            )
        if status >= 400:
            error_msg = body
            if isinstance(body, dict):
                error_msg = body.get("message", str(body))
            raise WordPressError(
                f"HTTP {status} from {self.config.url}: {error_msg}",
                status_code=status,
                response_body=str(body),
            )

        return status, body, resp_headers

    async def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET request to a WP REST API v2 endpoint."""
        url = f"{self.config.api_url}/{endpoint}"
        _, body, _ = await self._request("GET", url, params=params)
        return body

    async def _post(
        self,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """POST request to a WP REST API v2 endpoint."""
        url = f"{self.config.api_url}/{endpoint}"
        _, body, _ = await self._request(
            "POST", url, json_data=json_data, data=data, headers=headers
        )
        return body

    # -----------------------------------------------------------------------
    # Posts
    # -----------------------------------------------------------------------

    async def create_post(
        self,
        title: str,
        content: str,
        status: str = "draft",
        categories: Optional[List[int]] = None,
        tags: Optional[List[int]] = None,
        meta: Optional[Dict[str, Any]] = None,
        excerpt: Optional[str] = None,
        featured_media: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create a new WordPress post.

        Parameters
        ----------
        title : str
            Post title.
        content : str
            Post content (HTML).
        status : str
            ``draft`` or ``publish``.
        categories, tags : list of int, optional
            Taxonomy term IDs to assign.
        meta : dict, optional
            Post meta fields (Yoast description and focus keyword).
        excerpt : str, optional
            Post excerpt.
        featured_media : int, optional
            Media ID for the featured image.

        Returns
        -------
        dict
            Full post object from the API including ``id`` and ``link``.
        """
        payload: Dict[str, Any] = {
            "title": title,
            "content": content,
            "status": status,
        }
        if categories:
            payload["categories"] = categories
        if tags:
            payload["tags"] = tags
        if meta:
            payload["meta"] = meta
        if excerpt:
            payload["excerpt"] = excerpt
        if featured_media is not None:
            payload["featured_media"] = featured_media

        result = await self._post("posts", json_data=payload)
        if not isinstance(result, dict) or "id" not in result:
            raise WordPressError(
                f"Unexpected response creating post on {self.config.url}: {str(result)[:200]}"
            )
        logger.info(
            "Created post %s on %s: %s (status=%s)",
            result.get("id"),
            self.config.site_id,
            title[:60],
            status,
        )
        return result

    # -----------------------------------------------------------------------
    # Media
    # -----------------------------------------------------------------------

    async def upload_media_bytes(
        self,
        payload: bytes,
        content_type: str,
        title: str,
        alt_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Upload raw image bytes to the media library.

        The WP REST API accepts the raw body with a Content-Disposition
        header, so no multipart encoding is needed.

        Returns
        -------
        dict
            Media object with ``id`` and ``source_url``.
        """
        extension = content_type.split("/")[-1] or "jpg"
        if extension == "jpeg":
            extension = "jpg"
        filename = _slugify_filename(title, extension)
        upload_headers = {
            "Content-Type": content_type,
            "Content-Disposition": f'attachment; filename="{filename}"',
        }
        result = await self._post("media", data=payload, headers=upload_headers)

        media_id = result.get("id") if isinstance(result, dict) else None
        logger.info(
            "Uploaded media %s to %s: id=%s",
            filename,
            self.config.site_id,
            media_id,
        )
        if alt_text and media_id:
            await self._post(f"media/{media_id}", json_data={"alt_text": alt_text})
        return result

    # -----------------------------------------------------------------------
    # Taxonomies
    # -----------------------------------------------------------------------

    async def get_categories(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        """All categories for this site, cached for the client's lifetime."""
        if self._categories_cache is not None and not force_refresh:
            return self._categories_cache

        all_categories: List[Dict[str, Any]] = []
        page = 1

        while True:
            batch = await self._get(
                "categories", params={"per_page": WP_MAX_PER_PAGE, "page": page}
            )
            if not isinstance(batch, list) or len(batch) == 0:
                break
            all_categories.extend(batch)
            if len(batch) < WP_MAX_PER_PAGE:
                break
            page += 1

        self._categories_cache = all_categories
        logger.debug(
            "Fetched %d categories from %s", len(all_categories), self.config.site_id
        )
        return all_categories

    async def ensure_tag(self, name: str) -> Dict[str, Any]:
        """
        Get a tag by name, creating it if it does not exist.

        Uses the REST ``search`` filter; only a case-insensitive exact name
        match counts as existing, since search also matches substrings.
        """
        name = name.strip()
        found = await self._get("tags", params={"search": name, "per_page": 20})
        if isinstance(found, list) and found:
            name_lower = name.lower()
            for tag in found:
                if str(tag.get("name", "")).lower().strip() == name_lower:
                    return tag

        result = await self._post("tags", json_data={"name": name})
        logger.info(
            "Created tag '%s' (id=%s) on %s",
            name,
            result.get("id") if isinstance(result, dict) else None,
            self.config.site_id,
        )
        return result

    def __repr__(self) -> str:
        return f"WordPressClient({self.config!r})"
