"""
Schedule Engine for WP Autopilot

Owns automation schedules: validation, trigger-time computation, and the
owner-scoped create / update / delete / pause / resume operations.

Trigger times:
    - RECURRING schedules use a 5-field cron expression evaluated in the
      schedule's IANA timezone (APScheduler CronTrigger + zoneinfo), so
      "0 9 * * *" in Europe/Berlin stays 09:00 local across DST changes.
    - ONCE schedules fire at ``scheduled_for`` and are exhausted afterwards.
    - Presets (HOURLY, DAILY, ...) expand to cron expressions.

All instants handed out are timezone-aware UTC.

Usage:
    from wpautopilot.schedule_engine import ScheduleService

    service = ScheduleService()
    schedule = service.create(
        "user-1",
        site_id=site.id,
        name="Morning digest",
        schedule_type="DAILY",
        timezone="America/New_York",
        rss_feed_id=feed.id,
    )
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from wpautopilot.config import DEFAULT_MAX_ARTICLES
from wpautopilot.errors import NotFoundError, ValidationError
from wpautopilot.models import AutomationSchedule, PublishStatus, ScheduleType

logger = logging.getLogger("schedule_engine")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

UTC = timezone.utc

# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

SCHEDULE_PRESETS: dict[str, str] = {
    "EVERY_5_MIN": "*/5 * * * *",
    "EVERY_10_MIN": "*/10 * * * *",
    "EVERY_30_MIN": "*/30 * * * *",
    "HOURLY": "0 * * * *",
    "EVERY_2_HOURS": "0 */2 * * *",
    "EVERY_6_HOURS": "0 */6 * * *",
    "EVERY_12_HOURS": "0 */12 * * *",
    "DAILY": "0 8 * * *",
    "WEEKLY": "0 8 * * 1",
}

# Fields whose change means next_run_at must be recomputed
_TIMING_FIELDS = frozenset({"schedule_type", "cron_expression", "timezone", "scheduled_for"})

_UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "site_id",
    "rss_feed_id",
    "topic",
    "schedule_type",
    "cron_expression",
    "timezone",
    "scheduled_for",
    "auto_publish",
    "publish_status",
    "max_articles_per_run",
})

# Low per-run caps are legal but usually a mistake
LOW_MAX_ARTICLES_WARNING = 2


def _now_utc() -> datetime:
    """Return the current time in UTC, timezone-aware."""
    return datetime.now(UTC)


def _to_utc(dt: datetime) -> datetime:
    """Ensure a datetime is in UTC. Naive datetimes are assumed UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


# ---------------------------------------------------------------------------
# Cron parsing
# ---------------------------------------------------------------------------

_CRON_WEEKDAY_NAMES = {"sun", "mon", "tue", "wed", "thu", "fri", "sat"}


def _cron_dow_to_aps(value: int) -> int:
    """Crontab weekday (0/7 = Sunday) to APScheduler weekday (0 = Monday)."""
    return (value - 1) % 7


def _translate_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field with APScheduler numbering.

    Numeric tokens, ranges and steps are expanded to an explicit list;
    weekday names and ``*`` pass through untouched.
    """
    if field == "*" or field == "?":
        return "*"

    out: list[str] = []
    for token in field.split(","):
        token = token.strip().lower()
        if not token:
            raise ValidationError(f"Invalid day-of-week field: {field!r}")
        if token[:3] in _CRON_WEEKDAY_NAMES:
            out.append(token)
            continue

        base, _, step_str = token.partition("/")
        step = 1
        if step_str:
            if not step_str.isdigit() or int(step_str) == 0:
                raise ValidationError(f"Invalid day-of-week step: {token!r}")
            step = int(step_str)

        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            lo, _, hi = base.partition("-")
            if not (lo.isdigit() and hi.isdigit()):
                raise ValidationError(f"Invalid day-of-week range: {token!r}")
            start, end = int(lo), int(hi)
        elif base.isdigit():
            start = int(base)
            end = start if not step_str else 6
        else:
            raise ValidationError(f"Invalid day-of-week value: {token!r}")

        if start > 7 or end > 7 or start > end:
            raise ValidationError(f"Day-of-week out of range: {token!r}")
        out.extend(str(_cron_dow_to_aps(v)) for v in range(start, end + 1, step))

    # Deduplicate while keeping order (0 and 7 are both Sunday)
    seen: list[str] = []
    for item in out:
        if item not in seen:
            seen.append(item)
    return ",".join(seen)


def resolve_timezone(name: str) -> ZoneInfo:
    """Look up an IANA timezone or raise ValidationError."""
    if not name:
        raise ValidationError("timezone is required")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name!r}") from exc


def _is_restricted(field: str) -> bool:
    return field not in ("*", "?")


def build_trigger(expression: str, tz_name: str) -> BaseTrigger:
    """
    Parse a 5-field cron expression into a timezone-bound trigger.

    When both day-of-month and day-of-week are restricted, crontab fires
    on either match, so the two halves are combined with an OrTrigger.
    """
    if not expression or not expression.strip():
        raise ValidationError("cron_expression is required for recurring schedules")
    parts = expression.split()
    if len(parts) != 5:
        raise ValidationError(
            f"Cron expression must have 5 fields (minute hour day month weekday), got {len(parts)}: {expression!r}"
        )
    tz = resolve_timezone(tz_name)
    minute, hour, day, month, day_of_week = parts
    aps_day_of_week = _translate_day_of_week(day_of_week)
    try:
        if _is_restricted(day) and _is_restricted(day_of_week):
            return OrTrigger([
                CronTrigger(minute=minute, hour=hour, day=day, month=month, timezone=tz),
                CronTrigger(
                    minute=minute, hour=hour, month=month, day_of_week=aps_day_of_week, timezone=tz
                ),
            ])
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=aps_day_of_week,
            timezone=tz,
        )
    except ValueError as exc:
        raise ValidationError(f"Invalid cron expression {expression!r}: {exc}") from exc


def next_cron_time(expression: str, tz_name: str, after: datetime) -> Optional[datetime]:
    """Earliest fire time strictly after *after*, in UTC. None if it never fires."""
    trigger = build_trigger(expression, tz_name)
    # CronTrigger returns fire times >= now; nudge past *after* for strictness
    start = _to_utc(after) + timedelta(microseconds=1)
    try:
        fire_time = trigger.get_next_fire_time(None, start)
    except (ValueError, OverflowError):
        return None
    if fire_time is None:
        return None
    return fire_time.astimezone(UTC)


def localize_scheduled_for(value: datetime, tz_name: str) -> datetime:
    """A naive wall-clock ``scheduled_for`` is read in the schedule's timezone."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=resolve_timezone(tz_name))
    return value.astimezone(UTC)


def resolve_schedule_type(
    schedule_type: str | ScheduleType, cron_expression: Optional[str]
) -> tuple[ScheduleType, Optional[str]]:
    """Map ONCE / RECURRING / CUSTOM / preset names to a type and expression."""
    raw = schedule_type.value if isinstance(schedule_type, ScheduleType) else str(schedule_type or "")
    key = raw.strip().upper()
    if key == ScheduleType.ONCE.value:
        return ScheduleType.ONCE, None
    if key in (ScheduleType.RECURRING.value, "CUSTOM"):
        return ScheduleType.RECURRING, cron_expression
    if key in SCHEDULE_PRESETS:
        return ScheduleType.RECURRING, SCHEDULE_PRESETS[key]
    valid = ", ".join(["ONCE", "RECURRING", "CUSTOM"] + sorted(SCHEDULE_PRESETS))
    raise ValidationError(f"Unknown schedule_type {raw!r}. Use one of: {valid}")


def effective_max_articles(schedule: AutomationSchedule) -> int:
    """Per-run cap on fresh items; 0 / unset falls back to the default cap."""
    value = schedule.max_articles_per_run or 0
    return value if value > 0 else DEFAULT_MAX_ARTICLES


# ---------------------------------------------------------------------------
# Core computation
# ---------------------------------------------------------------------------


def compute_next_run(schedule: AutomationSchedule, from_time: datetime) -> Optional[datetime]:
    """
    Compute the next time *schedule* should fire after *from_time*.

    ONCE: ``scheduled_for`` while the schedule has not fired, else None.
    RECURRING: earliest cron occurrence strictly after *from_time*,
    resolved in the schedule's timezone.
    """
    if schedule.schedule_type == ScheduleType.ONCE:
        if schedule.last_run_at is not None or schedule.scheduled_for is None:
            return None
        return _to_utc(schedule.scheduled_for)
    return next_cron_time(schedule.cron_expression or "", schedule.timezone, from_time)


def validate_schedule_fields(
    *,
    schedule_type: ScheduleType,
    cron_expression: Optional[str],
    timezone_name: str,
    scheduled_for: Optional[datetime],
    rss_feed_id: Optional[str],
    topic: Optional[str],
    publish_status: str,
    max_articles_per_run: Optional[int],
    now: datetime,
) -> None:
    """Raise ValidationError for any invalid combination. Nothing is persisted."""
    resolve_timezone(timezone_name)

    if schedule_type == ScheduleType.RECURRING:
        if next_cron_time(cron_expression or "", timezone_name, now) is None:
            raise ValidationError(
                f"Cron expression {cron_expression!r} never fires (impossible date)"
            )
    elif schedule_type == ScheduleType.ONCE:
        if scheduled_for is None:
            raise ValidationError("scheduled_for is required for ONCE schedules")

    if not rss_feed_id and not (topic and topic.strip()):
        raise ValidationError("A schedule needs an rss_feed_id or a topic")

    valid_statuses = {s.value for s in PublishStatus}
    if publish_status not in valid_statuses:
        raise ValidationError(
            f"publish_status must be one of {sorted(valid_statuses)}, got {publish_status!r}"
        )

    if max_articles_per_run is not None and max_articles_per_run < 0:
        raise ValidationError("max_articles_per_run cannot be negative")


# ---------------------------------------------------------------------------
# ScheduleService
# ---------------------------------------------------------------------------


class ScheduleService:
    """Owner-scoped schedule management backed by the relational store."""

    def __init__(
        self,
        store=None,
        ledger=None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if store is None:
            from wpautopilot.store import get_store
            store = get_store()
        if ledger is None:
            from wpautopilot.ledger import ExecutionLedger
            ledger = ExecutionLedger(store)
        self.store = store
        self.ledger = ledger
        self._clock = clock

    # -- Helpers -----------------------------------------------------------

    def _require(self, owner_id: str, schedule_id: str) -> AutomationSchedule:
        schedule = self.store.get_schedule(schedule_id, owner_id=owner_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return schedule

    def _check_references(self, owner_id: str, site_id: str, rss_feed_id: Optional[str]) -> None:
        if self.store.get_site(site_id, owner_id=owner_id) is None:
            raise NotFoundError(f"Site {site_id} not found")
        if rss_feed_id and self.store.get_feed(rss_feed_id, owner_id=owner_id) is None:
            raise NotFoundError(f"RSS feed {rss_feed_id} not found")

    @staticmethod
    def _warn_low_cap(name: str, max_articles: Optional[int]) -> None:
        if max_articles and 0 < max_articles <= LOW_MAX_ARTICLES_WARNING:
            logger.warning(
                "Schedule %r caps runs at %d article(s); only that many items are processed per run",
                name,
                max_articles,
            )

    # -- CRUD --------------------------------------------------------------

    def create(
        self,
        owner_id: str,
        *,
        site_id: str,
        name: str,
        schedule_type: str | ScheduleType,
        cron_expression: Optional[str] = None,
        timezone: str = "UTC",
        scheduled_for: Optional[datetime] = None,
        rss_feed_id: Optional[str] = None,
        topic: Optional[str] = None,
        description: Optional[str] = None,
        auto_publish: bool = False,
        publish_status: str = PublishStatus.DRAFT.value,
        max_articles_per_run: Optional[int] = None,
    ) -> AutomationSchedule:
        """
        Validate and persist a new schedule with its first ``next_run_at``.

        ``schedule_type`` accepts ONCE, RECURRING, CUSTOM (alias of
        RECURRING) or a preset name such as HOURLY or DAILY.
        """
        if not name or not name.strip():
            raise ValidationError("name is required")
        now = self._clock()
        stype, expression = resolve_schedule_type(schedule_type, cron_expression)
        if scheduled_for is not None:
            scheduled_for = localize_scheduled_for(scheduled_for, timezone)

        validate_schedule_fields(
            schedule_type=stype,
            cron_expression=expression,
            timezone_name=timezone,
            scheduled_for=scheduled_for,
            rss_feed_id=rss_feed_id,
            topic=topic,
            publish_status=publish_status,
            max_articles_per_run=max_articles_per_run,
            now=now,
        )
        if stype == ScheduleType.ONCE and scheduled_for is not None and scheduled_for < now:
            raise ValidationError("scheduled_for must be in the future")
        self._check_references(owner_id, site_id, rss_feed_id)
        self._warn_low_cap(name, max_articles_per_run)

        schedule = AutomationSchedule(
            owner_id=owner_id,
            site_id=site_id,
            rss_feed_id=rss_feed_id,
            topic=topic.strip() if topic else None,
            name=name.strip(),
            description=description,
            schedule_type=stype,
            cron_expression=expression if stype == ScheduleType.RECURRING else None,
            timezone=timezone,
            scheduled_for=scheduled_for if stype == ScheduleType.ONCE else None,
            is_active=True,
            auto_publish=auto_publish,
            publish_status=publish_status,
            max_articles_per_run=max_articles_per_run or 0,
            version=0,
        )
        schedule.next_run_at = compute_next_run(schedule, now)
        self.store.add_schedule(schedule)

        logger.info(
            "Created schedule %r (id=%s, type=%s, next_run=%s)",
            schedule.name,
            schedule.id[:8],
            stype.value,
            schedule.next_run_at.isoformat() if schedule.next_run_at else None,
        )
        return schedule

    def get(self, owner_id: str, schedule_id: str) -> AutomationSchedule:
        return self._require(owner_id, schedule_id)

    def list_schedules(
        self,
        owner_id: str,
        *,
        site_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[AutomationSchedule], int]:
        return self.store.list_schedules(
            owner_id, site_id=site_id, is_active=is_active, page=page, per_page=per_page
        )

    def update(self, owner_id: str, schedule_id: str, **changes: Any) -> AutomationSchedule:
        """
        Apply a partial update. Timing changes are re-validated and, for an
        active schedule, ``next_run_at`` is recomputed from now.
        """
        current = self._require(owner_id, schedule_id)
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown schedule field(s): {', '.join(sorted(unknown))}")

        now = self._clock()
        merged: dict[str, Any] = {
            "site_id": current.site_id,
            "rss_feed_id": current.rss_feed_id,
            "topic": current.topic,
            "schedule_type": current.schedule_type,
            "cron_expression": current.cron_expression,
            "timezone": current.timezone,
            "scheduled_for": current.scheduled_for,
            "publish_status": current.publish_status,
            "max_articles_per_run": current.max_articles_per_run,
        }
        merged.update(changes)

        stype, expression = resolve_schedule_type(merged["schedule_type"], merged["cron_expression"])
        scheduled_for = merged["scheduled_for"]
        if scheduled_for is not None:
            scheduled_for = localize_scheduled_for(scheduled_for, merged["timezone"])

        validate_schedule_fields(
            schedule_type=stype,
            cron_expression=expression,
            timezone_name=merged["timezone"],
            scheduled_for=scheduled_for,
            rss_feed_id=merged["rss_feed_id"],
            topic=merged["topic"],
            publish_status=merged["publish_status"],
            max_articles_per_run=merged["max_articles_per_run"],
            now=now,
        )
        retimed = "scheduled_for" in changes or "schedule_type" in changes
        if stype == ScheduleType.ONCE and retimed and scheduled_for is not None and scheduled_for < now:
            raise ValidationError("scheduled_for must be in the future")
        if "site_id" in changes or "rss_feed_id" in changes:
            self._check_references(owner_id, merged["site_id"], merged["rss_feed_id"])
        if "max_articles_per_run" in changes:
            self._warn_low_cap(current.name, changes["max_articles_per_run"])

        fields = dict(changes)
        fields["schedule_type"] = stype
        fields["cron_expression"] = expression if stype == ScheduleType.RECURRING else None
        fields["scheduled_for"] = scheduled_for if stype == ScheduleType.ONCE else None
        if fields.get("max_articles_per_run") is None and "max_articles_per_run" in fields:
            fields["max_articles_per_run"] = 0

        if _TIMING_FIELDS & set(changes):
            if stype == ScheduleType.ONCE and "scheduled_for" in changes:
                # A new one-off time re-arms the schedule
                fields["last_run_at"] = None
            if current.is_active:
                candidate = AutomationSchedule(
                    schedule_type=stype,
                    cron_expression=fields["cron_expression"],
                    timezone=merged["timezone"],
                    scheduled_for=fields["scheduled_for"],
                    last_run_at=fields.get("last_run_at", current.last_run_at),
                )
                fields["next_run_at"] = compute_next_run(candidate, now)

        updated = self.store.update_schedule(schedule_id, **fields)
        logger.info("Updated schedule %r (id=%s)", updated.name, schedule_id[:8])
        return updated

    def delete(self, owner_id: str, schedule_id: str) -> None:
        schedule = self._require(owner_id, schedule_id)
        self.store.delete_schedule(schedule_id)
        logger.info("Deleted schedule %r (id=%s)", schedule.name, schedule_id[:8])

    # -- Pause / resume ----------------------------------------------------

    def pause(self, owner_id: str, schedule_id: str) -> AutomationSchedule:
        """Stop future runs. History is kept and an in-flight run finishes."""
        self._require(owner_id, schedule_id)
        schedule = self.store.update_schedule(schedule_id, is_active=False, next_run_at=None)
        logger.info("Paused schedule %r (id=%s)", schedule.name, schedule_id[:8])
        return schedule

    def resume(self, owner_id: str, schedule_id: str) -> AutomationSchedule:
        """Re-activate and recompute ``next_run_at`` from now."""
        current = self._require(owner_id, schedule_id)
        now = self._clock()
        next_run = compute_next_run(current, now)
        if next_run is None:
            raise ValidationError(
                f"Schedule {schedule_id} has already fired and has no future run"
            )
        if next_run < now:
            next_run = now
        schedule = self.store.update_schedule(schedule_id, is_active=True, next_run_at=next_run)
        logger.info(
            "Resumed schedule %r (id=%s, next_run=%s)",
            schedule.name,
            schedule_id[:8],
            next_run.isoformat(),
        )
        return schedule

    # -- Stats -------------------------------------------------------------

    def stats(self, owner_id: str, site_id: Optional[str] = None) -> dict[str, Any]:
        """Schedule counts plus run statistics taken from the execution ledger."""
        total, active = self.store.count_schedules(owner_id, site_id=site_id)
        run_stats = self.ledger.owner_stats(owner_id, site_id=site_id)
        return {
            "total_schedules": total,
            "active_schedules": active,
            **run_stats,
        }
