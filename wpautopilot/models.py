"""
Relational model for WP Autopilot (SQLAlchemy 2.0 declarative mapping).

Tables:
    sites                  -- WordPress targets with encrypted app passwords
    rss_feeds              -- feeds that RSS schedules pull from
    automation_schedules   -- recurring / one-off triggers plus claim columns
    automation_executions  -- append-only run ledger, owned by a schedule
    automation_jobs        -- one article's generation-to-publish attempt

All timestamps are stored and returned as timezone-aware UTC.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

UTC = timezone.utc


def _now_utc() -> datetime:
    """Return the current time in UTC, timezone-aware."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ScheduleType(str, Enum):
    """How a schedule fires."""
    ONCE = "ONCE"
    RECURRING = "RECURRING"


class JobStatus(str, Enum):
    """Lifecycle of an automation job."""
    PENDING = "PENDING"
    GENERATING = "GENERATING"
    GENERATED = "GENERATED"
    PUBLISHING = "PUBLISHING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"


class ExecutionOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILURE = "FAILURE"


class SourceType(str, Enum):
    TOPIC = "TOPIC"
    RSS = "RSS"


class PublishStatus(str, Enum):
    DRAFT = "draft"
    PUBLISH = "publish"


TERMINAL_STATUSES = frozenset({JobStatus.PUBLISHED, JobStatus.FAILED})


# ---------------------------------------------------------------------------
# Column types
# ---------------------------------------------------------------------------


class UTCDateTime(TypeDecorator):
    """DateTime that always binds UTC and always loads timezone-aware UTC.

    SQLite drops tzinfo on the way back, so naive values read from the
    database are re-tagged as UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _enum(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=16, validate_strings=True)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Sites & feeds
# ---------------------------------------------------------------------------


class Site(Base):
    """A WordPress site reachable through its REST API."""

    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(200))
    url: Mapped[str] = mapped_column(String(500))
    username: Mapped[str] = mapped_column(String(200))
    encrypted_password: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "url": self.url,
            "username": self.username,
            "created_at": _iso(self.created_at),
        }


class RSSFeed(Base):
    __tablename__ = "rss_feeds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(200))
    url: Mapped[str] = mapped_column(String(1000))
    is_active: Mapped[bool] = mapped_column(default=True)
    last_fetched_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "url": self.url,
            "is_active": self.is_active,
            "last_fetched_at": _iso(self.last_fetched_at),
            "created_at": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


class AutomationSchedule(Base):
    """A recurring or one-off trigger for automated article generation.

    ``claim_token`` / ``claimed_at`` / ``version`` implement the per-schedule
    claim that keeps a schedule from running twice at once.
    """

    __tablename__ = "automation_schedules"
    __table_args__ = (
        Index("ix_schedules_due", "is_active", "next_run_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    site_id: Mapped[str] = mapped_column(String(36), index=True)
    rss_feed_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    topic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    schedule_type: Mapped[ScheduleType] = mapped_column(_enum(ScheduleType))
    cron_expression: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    auto_publish: Mapped[bool] = mapped_column(default=False)
    publish_status: Mapped[str] = mapped_column(String(16), default=PublishStatus.DRAFT.value)
    max_articles_per_run: Mapped[int] = mapped_column(Integer, default=0)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)

    claim_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), default=_now_utc, onupdate=_now_utc
    )

    @property
    def is_claimed(self) -> bool:
        return self.claim_token is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "site_id": self.site_id,
            "rss_feed_id": self.rss_feed_id,
            "topic": self.topic,
            "name": self.name,
            "description": self.description,
            "schedule_type": self.schedule_type.value,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "scheduled_for": _iso(self.scheduled_for),
            "is_active": self.is_active,
            "auto_publish": self.auto_publish,
            "publish_status": self.publish_status,
            "max_articles_per_run": self.max_articles_per_run,
            "last_run_at": _iso(self.last_run_at),
            "next_run_at": _iso(self.next_run_at),
            "running": self.is_claimed,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class AutomationExecution(Base):
    """One firing of a schedule. Immutable once ``finished_at`` is set."""

    __tablename__ = "automation_executions"
    __table_args__ = (
        Index("ix_executions_schedule_started", "schedule_id", "started_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    schedule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("automation_schedules.id", ondelete="CASCADE")
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_now_utc)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    outcome: Mapped[Optional[ExecutionOutcome]] = mapped_column(_enum(ExecutionOutcome), nullable=True)
    articles_created: Mapped[int] = mapped_column(Integer, default=0)
    articles_failed: Mapped[int] = mapped_column(Integer, default=0)
    articles_skipped: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "outcome": self.outcome.value if self.outcome else None,
            "articles_created": self.articles_created,
            "articles_failed": self.articles_failed,
            "articles_skipped": self.articles_skipped,
            "error_message": self.error_message,
            "duration_seconds": self.duration_seconds,
        }


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class AutomationJob(Base):
    """One article's generation-to-publish attempt, kept forever as audit trail."""

    __tablename__ = "automation_jobs"
    __table_args__ = (
        # Dedup: at most one live (non-FAILED) job per schedule and source item
        Index(
            "uq_jobs_schedule_source_live",
            "schedule_id",
            "source_url",
            unique=True,
            sqlite_where=text("status != 'FAILED'"),
            postgresql_where=text("status != 'FAILED'"),
        ),
        Index("ix_jobs_owner_status", "owner_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64))
    site_id: Mapped[str] = mapped_column(String(36), index=True)
    schedule_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    execution_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    source_type: Mapped[SourceType] = mapped_column(_enum(SourceType))
    rss_feed_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    source_title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    source_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    topic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rewrite_style: Mapped[str] = mapped_column(String(16), default="rewrite")

    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), default=JobStatus.PENDING)

    generated_title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    generated_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generated_excerpt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    categories: Mapped[list] = mapped_column(JSON, default=list)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    seo_meta: Mapped[dict] = mapped_column(JSON, default=dict)
    featured_image_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    inline_images: Mapped[list] = mapped_column(JSON, default=list)

    ai_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    ai_cost: Mapped[float] = mapped_column(Float, default=0.0)

    wp_post_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    wp_post_link: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), default=_now_utc, onupdate=_now_utc
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def short_id(self) -> str:
        return self.id[:8] if self.id else "--------"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "site_id": self.site_id,
            "schedule_id": self.schedule_id,
            "execution_id": self.execution_id,
            "source_type": self.source_type.value,
            "rss_feed_id": self.rss_feed_id,
            "source_url": self.source_url,
            "source_title": self.source_title,
            "topic": self.topic,
            "status": self.status.value,
            "generated_title": self.generated_title,
            "generated_content": self.generated_content,
            "generated_excerpt": self.generated_excerpt,
            "categories": list(self.categories or []),
            "tags": list(self.tags or []),
            "seo_meta": dict(self.seo_meta or {}),
            "featured_image_url": self.featured_image_url,
            "inline_images": list(self.inline_images or []),
            "ai_model": self.ai_model,
            "tokens_used": self.tokens_used,
            "ai_cost": self.ai_cost,
            "wp_post_id": self.wp_post_id,
            "wp_post_link": self.wp_post_link,
            "published_at": _iso(self.published_at),
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
