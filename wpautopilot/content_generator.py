"""
Content Generator: turns one job's source into a publishable article.

Pipeline stages:
    1. SOURCE    -- RSS item (title + body stored on the job) or a topic prompt
    2. BODY      -- one AI call returning {title, excerpt, content}; fail fast
    3. METADATA  -- one AI call returning categories, tags and SEO fields
    4. IMAGES    -- AI search phrases + image search; optional, never fails

Token usage and cost are added to the job in the store right after each
successful AI call, so spend survives a failure in a later stage.

Usage:
    from wpautopilot.content_generator import ContentGenerator

    generator = ContentGenerator()
    article = await generator.generate(job)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from wpautopilot.ai_service import AIResponse, extract_json
from wpautopilot.errors import UpstreamError
from wpautopilot.image_service import ImageFilters, ImageResult
from wpautopilot.models import AutomationJob, SourceType
from wpautopilot.rss_parser import strip_html

logger = logging.getLogger("content_generator")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SEO_DESCRIPTION_MAX = 160
MAX_SOURCE_CHARS = 8000
METADATA_CONTENT_CHARS = 3000

FALLBACK_IMAGE_PHRASES = ["stock photo", "business", "technology"]
IMAGE_PHRASES_USED = 3
IMAGES_PER_PHRASE = 5
MAX_INLINE_IMAGES = 4

REWRITE_STYLES = ("rewrite", "summary", "expand")

_STYLE_INSTRUCTIONS = {
    "rewrite": (
        "Rewrite the source article completely in your own words. Keep every "
        "fact, figure and quote accurate, restructure it for a blog audience "
        "and add clear H2 subheadings. Aim for a similar length to the source."
    ),
    "summary": (
        "Write a concise summary article of 300 to 500 words covering the key "
        "points of the source. Use short paragraphs and at most two subheadings."
    ),
    "expand": (
        "Expand the source into an in-depth article of at least 1500 words. "
        "Add background, context, practical implications and examples, with "
        "H2 and H3 subheadings."
    ),
}

BODY_SYSTEM_PROMPT = (
    "You are a professional blog writer producing original, SEO-friendly "
    "articles for WordPress. Write in clear, engaging English. Never mention "
    "that you are an AI or reference the instructions you were given.\n\n"
    "Respond with ONLY a JSON object, no prose before or after, shaped as:\n"
    '{"title": "...", "excerpt": "one or two sentence summary", '
    '"content": "the full article body in Markdown"}'
)

METADATA_SYSTEM_PROMPT = (
    "You are an SEO specialist. Given an article, respond with ONLY a JSON "
    "object shaped as:\n"
    '{"categories": ["1-3 broad category names"], '
    '"tags": ["5-8 specific tags"], '
    '"seoDescription": "meta description, max 160 characters", '
    '"seoKeywords": ["3-5 focus keywords"]}'
)

IMAGE_TERMS_SYSTEM_PROMPT = (
    "You pick stock photo search phrases. Given an article, respond with ONLY "
    "a JSON array of 3 to 5 short, concrete, visual search phrases "
    '(2-4 words each), e.g. ["solar panels roof", "city skyline night"].'
)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class InlineImage:
    url: str
    alt: str
    position: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GeneratedArticle:
    """Everything the publish adapter needs, plus the spend it took."""

    title: str
    content: str
    excerpt: str = ""
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    seo_description: str = ""
    seo_keywords: list[str] = field(default_factory=list)
    featured_image_url: Optional[str] = None
    inline_images: list[InlineImage] = field(default_factory=list)
    tokens_used: int = 0
    cost: float = 0.0

    @property
    def seo_meta(self) -> dict[str, Any]:
        return {"description": self.seo_description, "keywords": list(self.seo_keywords)}

    def to_job_fields(self) -> dict[str, Any]:
        """Column values persisted on the job when it reaches GENERATED."""
        return {
            "generated_title": self.title,
            "generated_content": self.content,
            "generated_excerpt": self.excerpt,
            "categories": list(self.categories),
            "tags": list(self.tags),
            "seo_meta": self.seo_meta,
            "featured_image_url": self.featured_image_url,
            "inline_images": [img.to_dict() for img in self.inline_images],
        }


def _clean_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def select_images(images: list[ImageResult]) -> tuple[Optional[str], list[InlineImage]]:
    """First image is featured; the next (up to four) go inline."""
    usable = [img for img in images if img.url]
    if not usable:
        return None, []
    featured = usable[0].url
    inline = [
        InlineImage(url=img.url, alt=img.alt_text, position=index)
        for index, img in enumerate(usable[1:1 + MAX_INLINE_IMAGES])
    ]
    return featured, inline


# ---------------------------------------------------------------------------
# ContentGenerator
# ---------------------------------------------------------------------------


class ContentGenerator:
    """
    Runs the generation stages for one job.

    Parameters
    ----------
    ai : AIService, optional
        Defaults to the process-wide service.
    images : ImageService, optional
        Defaults to the process-wide service.
    store : Store, optional
        Where per-call spend is recorded.
    """

    def __init__(self, ai=None, images=None, store=None) -> None:
        if ai is None:
            from wpautopilot.ai_service import get_ai_service
            ai = get_ai_service()
        if images is None:
            from wpautopilot.image_service import get_image_service
            images = get_image_service()
        if store is None:
            from wpautopilot.store import get_store
            store = get_store()
        self.ai = ai
        self.images = images
        self.store = store

    # -- AI plumbing --------------------------------------------------------

    async def _complete(
        self,
        job: AutomationJob,
        feature: str,
        system: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> AIResponse:
        response = await self.ai.chat_completion(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            model=self.ai.model_for(feature),
            options={"max_tokens": max_tokens, "temperature": temperature},
        )
        self.store.add_job_spend(job.id, response.tokens_used, response.cost, response.model)
        return response

    # -- Stage 1: source ----------------------------------------------------

    @staticmethod
    def build_body_prompt(job: AutomationJob) -> str:
        if job.source_type == SourceType.RSS:
            style = job.rewrite_style if job.rewrite_style in REWRITE_STYLES else "rewrite"
            source_text = strip_html(job.source_content or "")[:MAX_SOURCE_CHARS]
            return (
                f"{_STYLE_INSTRUCTIONS[style]}\n\n"
                f"Source title: {job.source_title or ''}\n"
                f"Source URL: {job.source_url or ''}\n\n"
                f"Source article:\n{source_text}"
            )
        return (
            "Write a comprehensive, well-structured blog article about the "
            f"following topic:\n\n{job.topic or ''}\n\n"
            "Use an engaging introduction, H2 subheadings for the main points "
            "and a short conclusion."
        )

    # -- Stage 2: body ------------------------------------------------------

    async def generate_body(self, job: AutomationJob) -> dict[str, str]:
        feature = "rewrite" if job.source_type == SourceType.RSS else "generate"
        response = await self._complete(
            job, feature, BODY_SYSTEM_PROMPT, self.build_body_prompt(job),
            max_tokens=4000, temperature=0.7,
        )
        try:
            data = extract_json(response.content)
        except ValueError as exc:
            raise UpstreamError(
                f"AI returned an unparseable article body: {exc}", provider=response.provider
            ) from exc

        if not isinstance(data, dict):
            raise UpstreamError("AI returned an article body that is not an object", provider=response.provider)
        title = str(data.get("title") or "").strip()
        content = str(data.get("content") or "").strip()
        if not title or not content:
            raise UpstreamError("AI article body is missing a title or content", provider=response.provider)
        return {
            "title": title,
            "content": content,
            "excerpt": str(data.get("excerpt") or "").strip(),
        }

    # -- Stage 3: metadata --------------------------------------------------

    async def generate_metadata(self, job: AutomationJob, title: str, content: str) -> dict[str, Any]:
        prompt = f"Title: {title}\n\nArticle:\n{content[:METADATA_CONTENT_CHARS]}"
        response = await self._complete(
            job, "seo-meta", METADATA_SYSTEM_PROMPT, prompt, max_tokens=500, temperature=0.3,
        )
        try:
            data = extract_json(response.content)
            if not isinstance(data, dict):
                raise ValueError("metadata is not an object")
        except ValueError as exc:
            logger.warning("Job %s: unparseable metadata, using defaults (%s)", job.short_id, exc)
            return {
                "categories": ["Uncategorized"],
                "tags": [],
                "seo_description": title[:SEO_DESCRIPTION_MAX],
                "seo_keywords": [],
            }
        return {
            "categories": _clean_str_list(data.get("categories")),
            "tags": _clean_str_list(data.get("tags")),
            "seo_description": str(data.get("seoDescription") or "")[:SEO_DESCRIPTION_MAX],
            "seo_keywords": _clean_str_list(data.get("seoKeywords")),
        }

    # -- Stage 4: images ----------------------------------------------------

    async def image_phrases(self, job: AutomationJob, title: str, content: str) -> list[str]:
        prompt = f"Title: {title}\n\nArticle:\n{content[:1500]}"
        response = await self._complete(
            job, "image-terms", IMAGE_TERMS_SYSTEM_PROMPT, prompt, max_tokens=200, temperature=0.5,
        )
        try:
            phrases = _clean_str_list(extract_json(response.content))
        except ValueError:
            phrases = []
        return phrases or list(FALLBACK_IMAGE_PHRASES)

    async def find_images(self, job: AutomationJob, title: str, content: str) -> list[ImageResult]:
        """Best effort: any failure yields an empty list."""
        found: list[ImageResult] = []
        stage = "phrase generation"
        try:
            phrases = await self.image_phrases(job, title, content)
            stage = "search"
            for phrase in phrases[:IMAGE_PHRASES_USED]:
                results = await self.images.search(phrase, ImageFilters(page=1, per_page=IMAGES_PER_PHRASE))
                found.extend(results)
        except Exception as exc:
            logger.warning(
                "Job %s: image %s failed, continuing without images: %s: %s",
                job.short_id, stage, type(exc).__name__, exc,
            )
            return []
        if not found:
            logger.warning("Job %s: no images found; publishing without images", job.short_id)
        return found

    # -- Orchestration ------------------------------------------------------

    async def generate(self, job: AutomationJob) -> GeneratedArticle:
        """
        Run every stage for *job*.

        Raises
        ------
        UpstreamError
            When the body or metadata call fails or the body is unusable.
        """
        logger.info("Job %s: generating article (%s)", job.short_id, job.source_type.value)
        tokens_before = job.tokens_used or 0

        body = await self.generate_body(job)
        metadata = await self.generate_metadata(job, body["title"], body["content"])
        images = await self.find_images(job, body["title"], body["content"])
        featured, inline = select_images(images)

        fresh = self.store.get_job(job.id)
        tokens_used = (fresh.tokens_used if fresh else 0) - tokens_before
        cost = fresh.ai_cost if fresh else 0.0

        article = GeneratedArticle(
            title=body["title"],
            content=body["content"],
            excerpt=body["excerpt"],
            categories=metadata["categories"],
            tags=metadata["tags"],
            seo_description=metadata["seo_description"],
            seo_keywords=metadata["seo_keywords"],
            featured_image_url=featured,
            inline_images=inline,
            tokens_used=max(tokens_used, 0),
            cost=cost,
        )
        logger.info(
            "Job %s: generated %r (%d tokens, %d inline image(s))",
            job.short_id, article.title[:60], article.tokens_used, len(article.inline_images),
        )
        return article
