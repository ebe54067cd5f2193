"""
Publish adapter: pushes a GENERATED job to its WordPress site.

A job is published at most once. The guard runs before any network I/O,
and the single ``create_post`` call is never retried, so a timeout cannot
produce a duplicate post.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import markdown

from wpautopilot.crypto import decrypt_secret
from wpautopilot.errors import AlreadyPublishedError, UpstreamError, ValidationError
from wpautopilot.models import AutomationJob, JobStatus, PublishStatus, Site
from wpautopilot.wordpress_client import SiteConfig, WordPressClient, WordPressError

logger = logging.getLogger("publisher")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

DEFAULT_CATEGORY_ID = 1
MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "nl2br", "sane_lists"]


@dataclass
class PublishResult:
    wp_post_id: int
    link: str
    featured_media_id: Optional[int] = None


# ---------------------------------------------------------------------------
# HTML assembly
# ---------------------------------------------------------------------------


def markdown_to_html(text: str) -> str:
    return markdown.markdown(text or "", extensions=MARKDOWN_EXTENSIONS)


def _figure(image: dict[str, Any]) -> str:
    url = html.escape(str(image.get("url", "")), quote=True)
    alt = html.escape(str(image.get("alt", "") or "Article image"), quote=True)
    return (
        '<figure class="wp-block-image">'
        f'<img src="{url}" alt="{alt}" />'
        f"<figcaption>{alt}</figcaption>"
        "</figure>"
    )


def insert_inline_images(content: str, images: list[dict[str, Any]]) -> str:
    """
    Spread inline images between paragraphs.

    One image goes after every ``max(2, paragraphs // (images + 1))``
    paragraphs, never after the last one; images that do not fit are
    appended at the end.
    """
    if not images:
        return content

    pieces = content.split("</p>")
    tail = pieces.pop()  # whatever follows the last closing tag
    paragraphs = [p for p in pieces if p.strip()]
    if not paragraphs:
        return "\n".join([content] + [_figure(img) for img in images])

    interval = max(2, len(paragraphs) // (len(images) + 1))
    result: list[str] = []
    image_index = 0
    for index, paragraph in enumerate(paragraphs):
        result.append(paragraph + "</p>")
        if (
            image_index < len(images)
            and (index + 1) % interval == 0
            and index < len(paragraphs) - 1
        ):
            result.append(_figure(images[image_index]))
            image_index += 1

    if tail.strip():
        result.append(tail)
    while image_index < len(images):
        result.append(_figure(images[image_index]))
        image_index += 1
    return "\n".join(result)


def match_categories(existing: list[dict[str, Any]], names: list[str]) -> list[int]:
    """Map suggested names onto existing categories: exact match, then substring."""
    ids: list[int] = []
    for name in names:
        wanted = name.lower().strip()
        if not wanted:
            continue
        match = next(
            (c for c in existing if str(c.get("name", "")).lower() == wanted), None
        )
        if match is None:
            match = next(
                (
                    c for c in existing
                    if wanted in str(c.get("name", "")).lower()
                    or (str(c.get("name", "")).lower() and str(c.get("name", "")).lower() in wanted)
                ),
                None,
            )
        if match is None:
            logger.debug("No existing category for %r, skipping", name)
            continue
        if match["id"] not in ids:
            ids.append(match["id"])
    return ids or [DEFAULT_CATEGORY_ID]


def site_config_for(site: Site) -> SiteConfig:
    """Decrypt the site's application password into a client config."""
    return SiteConfig(
        site_id=site.id,
        url=site.url,
        wp_user=site.username,
        app_password=decrypt_secret(site.encrypted_password),
    )


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------


class Publisher:
    """Creates the WordPress post for a generated job."""

    def __init__(
        self,
        images=None,
        client_factory: Callable[[SiteConfig], WordPressClient] = WordPressClient,
    ) -> None:
        if images is None:
            from wpautopilot.image_service import get_image_service
            images = get_image_service()
        self.images = images
        self.client_factory = client_factory

    async def _category_ids(self, client: WordPressClient, names: list[str]) -> list[int]:
        try:
            existing = await client.get_categories()
        except WordPressError as exc:
            logger.warning("Could not fetch categories from %s, using default: %s", client.config.url, exc)
            return [DEFAULT_CATEGORY_ID]
        return match_categories(existing, names)

    async def _tag_ids(self, client: WordPressClient, names: list[str]) -> list[int]:
        ids: list[int] = []
        for name in names:
            if not name.strip():
                continue
            try:
                tag = await client.ensure_tag(name)
            except WordPressError as exc:
                logger.warning("Could not get or create tag %r: %s", name, exc)
                continue
            if isinstance(tag, dict) and tag.get("id") is not None and tag["id"] not in ids:
                ids.append(tag["id"])
        return ids

    async def _featured_media(self, client: WordPressClient, job: AutomationJob) -> Optional[int]:
        if not job.featured_image_url:
            return None
        try:
            payload, content_type = await self.images.download(job.featured_image_url)
            media = await client.upload_media_bytes(
                payload, content_type, title=job.generated_title or "featured-image",
                alt_text=job.generated_title,
            )
        except UpstreamError as exc:
            logger.warning("Job %s: featured image upload failed, continuing: %s", job.short_id, exc)
            return None
        return media.get("id") if isinstance(media, dict) else None

    async def publish(self, job: AutomationJob, site: Site, status: str = PublishStatus.DRAFT.value) -> PublishResult:
        """
        Create the post for *job* on *site*.

        Raises
        ------
        AlreadyPublishedError
            The job already has a post or is PUBLISHED. No HTTP call is made.
        ValidationError
            The job has no generated content or *status* is not draft/publish.
        UpstreamError
            WordPress rejected the post or could not be reached.
        """
        if job.wp_post_id is not None or job.status == JobStatus.PUBLISHED:
            raise AlreadyPublishedError(
                f"Job {job.id} is already published (post {job.wp_post_id})"
            )
        if status not in (PublishStatus.DRAFT.value, PublishStatus.PUBLISH.value):
            raise ValidationError(f"Invalid publish status {status!r}; expected draft or publish")
        if not job.generated_title or not job.generated_content:
            raise ValidationError(f"Job {job.id} has no generated content to publish")

        config = site_config_for(site)
        content = insert_inline_images(
            markdown_to_html(job.generated_content), list(job.inline_images or [])
        )
        seo = dict(job.seo_meta or {})

        async with self.client_factory(config) as client:
            category_ids = await self._category_ids(client, list(job.categories or []))
            tag_ids = await self._tag_ids(client, list(job.tags or []))
            featured_media = await self._featured_media(client, job)

            post = await client.create_post(
                title=job.generated_title,
                content=content,
                status=status,
                categories=category_ids,
                tags=tag_ids,
                excerpt=job.generated_excerpt,
                featured_media=featured_media,
                meta={
                    "_yoast_wpseo_metadesc": seo.get("description", ""),
                    "_yoast_wpseo_focuskw": ", ".join(seo.get("keywords", [])),
                },
            )

        result = PublishResult(
            wp_post_id=int(post["id"]),
            link=str(post.get("link", "")),
            featured_media_id=featured_media,
        )
        logger.info("Job %s published to %s as post %d (%s)", job.short_id, site.url, result.wp_post_id, status)
        return result
