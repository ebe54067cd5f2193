"""Owner-scoped registration of WordPress sites and RSS feeds."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlparse

from wpautopilot.crypto import encrypt_secret
from wpautopilot.errors import NotFoundError, ValidationError
from wpautopilot.models import RSSFeed, Site

logger = logging.getLogger("sites")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)


def _require_http_url(url: str, label: str) -> str:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{label} must be an http(s) URL, got {url!r}")
    return url.rstrip("/")


class SiteService:
    def __init__(self, store=None) -> None:
        if store is None:
            from wpautopilot.store import get_store
            store = get_store()
        self.store = store

    # -- Sites -------------------------------------------------------------

    def add_site(self, owner_id: str, *, name: str, url: str, username: str, app_password: str) -> Site:
        """Register a site; the application password is stored encrypted."""
        if not name or not name.strip():
            raise ValidationError("name is required")
        if not username or not app_password:
            raise ValidationError("username and app_password are required")
        site = Site(
            owner_id=owner_id,
            name=name.strip(),
            url=_require_http_url(url, "url"),
            username=username.strip(),
            encrypted_password=encrypt_secret(app_password),
        )
        self.store.add_site(site)
        logger.info("Registered site %r (id=%s)", site.name, site.id[:8])
        return site

    def list_sites(self, owner_id: str) -> list[Site]:
        return self.store.list_sites(owner_id)

    def delete_site(self, owner_id: str, site_id: str) -> None:
        """Delete a site. Its schedules are deactivated; jobs stay as history."""
        if not self.store.delete_site(site_id, owner_id):
            raise NotFoundError(f"Site {site_id} not found")

    # -- Feeds -------------------------------------------------------------

    def add_feed(self, owner_id: str, *, name: str, url: str) -> RSSFeed:
        feed = RSSFeed(
            owner_id=owner_id,
            name=(name or url).strip(),
            url=_require_http_url(url, "url"),
            is_active=True,
        )
        self.store.add_feed(feed)
        logger.info("Registered feed %r (id=%s)", feed.name, feed.id[:8])
        return feed

    def list_feeds(self, owner_id: str) -> list[RSSFeed]:
        return self.store.list_feeds(owner_id)

    def get_feed(self, owner_id: str, feed_id: str) -> Optional[RSSFeed]:
        return self.store.get_feed(feed_id, owner_id)
