"""
WP Autopilot CLI

Usage:
    wpautopilot init-db
    wpautopilot add-site --name Blog --url https://blog.example.com --username editor --password "abcd efgh"
    wpautopilot add-feed --url https://news.example.com/feed --name "Example News"
    wpautopilot create --site-id <id> --name "Morning news" --type DAILY --feed-id <id> --timezone Europe/Berlin
    wpautopilot list
    wpautopilot pause <schedule-id>
    wpautopilot resume <schedule-id>
    wpautopilot run <schedule-id>
    wpautopilot executions <schedule-id>
    wpautopilot stats
    wpautopilot jobs --status FAILED
    wpautopilot start          # scheduler daemon
    wpautopilot serve          # API server (scheduler embedded)

All commands act on behalf of --owner (default: $WPAUTOPILOT_OWNER or "local").
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime
from typing import Any, List, Optional

from wpautopilot import __version__
from wpautopilot.config import API_HOST, API_PORT, DEFAULT_OWNER, MAX_CONCURRENCY, POLL_INTERVAL
from wpautopilot.errors import AutopilotError

logger = logging.getLogger("cli")


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _format_table(headers: list[str], rows: list[list[str]], max_col_width: int = 40) -> str:
    """Format a simple ASCII table for CLI output."""
    if not rows:
        return "(no results)"

    truncated_rows = [
        [val[:max_col_width - 3] + "..." if len(val) > max_col_width else val for val in row]
        for row in rows
    ]
    col_widths = [len(h) for h in headers]
    for row in truncated_rows:
        for i, val in enumerate(row):
            if i < len(col_widths):
                col_widths[i] = max(col_widths[i], len(val))

    fmt = "  ".join(f"{{:<{w}}}" for w in col_widths)
    lines = [fmt.format(*headers), "  ".join("-" * w for w in col_widths)]
    for row in truncated_rows:
        lines.append(fmt.format(*(row + [""] * (len(headers) - len(row)))))
    return "\n".join(lines)


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "-"


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _store():
    from wpautopilot.store import get_store
    return get_store()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_init_db(args: argparse.Namespace) -> None:
    store = _store()
    store.create_all()
    print(f"Database ready: {store.engine.url.render_as_string(hide_password=True)}")


def _cmd_add_site(args: argparse.Namespace) -> None:
    from wpautopilot.sites import SiteService

    site = SiteService(_store()).add_site(
        args.owner, name=args.name, url=args.url, username=args.username, app_password=args.password
    )
    print(f"Site added: {site.id}  {site.name}  {site.url}")


def _cmd_add_feed(args: argparse.Namespace) -> None:
    from wpautopilot.sites import SiteService

    feed = SiteService(_store()).add_feed(args.owner, name=args.name or args.url, url=args.url)
    print(f"Feed added: {feed.id}  {feed.name}  {feed.url}")


def _cmd_list(args: argparse.Namespace) -> None:
    from wpautopilot.schedule_engine import ScheduleService

    schedules, total = ScheduleService(_store()).list_schedules(
        args.owner, site_id=args.site_id, page=args.page, per_page=args.per_page
    )
    if args.json:
        _print_json([s.to_dict() for s in schedules])
        return
    headers = ["ID", "Name", "Type", "Cron", "TZ", "Active", "Next Run", "Last Run"]
    rows = [
        [
            s.id[:8],
            s.name,
            s.schedule_type.value,
            s.cron_expression or "-",
            s.timezone,
            "Yes" if s.is_active else "No",
            _fmt_time(s.next_run_at),
            _fmt_time(s.last_run_at),
        ]
        for s in schedules
    ]
    print(f"\n  Automation schedules  --  {len(schedules)} of {total}\n")
    print(_format_table(headers, rows))
    print()


def _cmd_create(args: argparse.Namespace) -> None:
    from wpautopilot.schedule_engine import ScheduleService

    scheduled_for = datetime.fromisoformat(args.at) if args.at else None
    schedule = ScheduleService(_store()).create(
        args.owner,
        site_id=args.site_id,
        name=args.name,
        schedule_type=args.type,
        cron_expression=args.cron,
        timezone=args.timezone,
        scheduled_for=scheduled_for,
        rss_feed_id=args.feed_id,
        topic=args.topic,
        description=args.description,
        auto_publish=args.auto_publish,
        publish_status=args.publish_status,
        max_articles_per_run=args.max_articles,
    )
    print(f"Schedule created: {schedule.id}")
    print(f"  Next run: {_fmt_time(schedule.next_run_at)}")


def _cmd_pause(args: argparse.Namespace) -> None:
    from wpautopilot.schedule_engine import ScheduleService

    schedule = ScheduleService(_store()).pause(args.owner, args.schedule_id)
    print(f"Paused: {schedule.name}")


def _cmd_resume(args: argparse.Namespace) -> None:
    from wpautopilot.schedule_engine import ScheduleService

    schedule = ScheduleService(_store()).resume(args.owner, args.schedule_id)
    print(f"Resumed: {schedule.name} (next run {_fmt_time(schedule.next_run_at)})")


def _cmd_run(args: argparse.Namespace) -> None:
    from wpautopilot.scheduler import AutomationScheduler

    scheduler = AutomationScheduler(_store())
    execution = asyncio.run(scheduler.execute_now(args.schedule_id, args.owner, wait=True))
    print(f"Execution {execution.id}: {execution.outcome.value if execution.outcome else 'OPEN'}")
    print(
        f"  created={execution.articles_created}  failed={execution.articles_failed}"
        f"  skipped={execution.articles_skipped}"
    )
    if execution.error_message:
        print(f"  error: {execution.error_message}")


def _cmd_executions(args: argparse.Namespace) -> None:
    from wpautopilot.ledger import ExecutionLedger
    from wpautopilot.schedule_engine import ScheduleService

    store = _store()
    ScheduleService(store).get(args.owner, args.schedule_id)
    executions, total = ExecutionLedger(store).list_executions(
        args.schedule_id, page=args.page, per_page=args.per_page
    )
    headers = ["ID", "Started", "Finished", "Outcome", "Created", "Failed", "Skipped", "Error"]
    rows = [
        [
            e.id[:8],
            _fmt_time(e.started_at),
            _fmt_time(e.finished_at),
            e.outcome.value if e.outcome else "RUNNING",
            str(e.articles_created),
            str(e.articles_failed),
            str(e.articles_skipped),
            e.error_message or "",
        ]
        for e in executions
    ]
    print(f"\n  Executions  --  {len(executions)} of {total}\n")
    print(_format_table(headers, rows))
    print()


def _cmd_stats(args: argparse.Namespace) -> None:
    from wpautopilot.schedule_engine import ScheduleService

    stats = ScheduleService(_store()).stats(args.owner, site_id=args.site_id)
    _print_json(stats)


def _cmd_jobs(args: argparse.Namespace) -> None:
    from wpautopilot.jobs import JobService

    jobs, total = JobService(_store()).list_jobs(
        args.owner,
        status=args.status,
        site_id=args.site_id,
        schedule_id=args.schedule_id,
        page=args.page,
        per_page=args.per_page,
    )
    headers = ["ID", "Status", "Source", "Title", "Tokens", "Post", "Error"]
    rows = [
        [
            j.short_id,
            j.status.value,
            j.source_type.value,
            j.generated_title or j.source_title or "",
            str(j.tokens_used or 0),
            str(j.wp_post_id or "-"),
            j.error_message or "",
        ]
        for j in jobs
    ]
    print(f"\n  Jobs  --  {len(jobs)} of {total}\n")
    print(_format_table(headers, rows))
    print()


def _cmd_start(args: argparse.Namespace) -> None:
    """Start the scheduler daemon."""
    from wpautopilot.scheduler import AutomationScheduler

    scheduler = AutomationScheduler(_store())

    print(f"Starting scheduler daemon (poll every {POLL_INTERVAL}s, {MAX_CONCURRENCY} worker(s))")
    print("Press Ctrl+C to stop.\n")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shutdown_event = asyncio.Event()

    async def _run_daemon() -> None:
        await scheduler.start()

        def _signal_handler() -> None:
            logger.info("Received shutdown signal.")
            shutdown_event.set()

        try:
            loop.add_signal_handler(signal.SIGINT, _signal_handler)
            loop.add_signal_handler(signal.SIGTERM, _signal_handler)
        except NotImplementedError:
            # Windows has no add_signal_handler; KeyboardInterrupt is handled below
            pass

        try:
            await shutdown_event.wait()
        finally:
            await scheduler.stop()

    try:
        loop.run_until_complete(_run_daemon())
    except KeyboardInterrupt:
        print("\nShutting down...")
        loop.run_until_complete(scheduler.stop())
    finally:
        loop.close()
        print("Scheduler stopped.")


def _cmd_serve(args: argparse.Namespace) -> None:
    """Run the API server with the scheduler embedded."""
    import uvicorn

    from wpautopilot import api

    api.EMBED_SCHEDULER = not args.no_scheduler
    uvicorn.run(api.app, host=args.host, port=args.port, log_level="info")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wpautopilot",
        description="Scheduled AI article generation and publishing for WordPress",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--owner", default=DEFAULT_OWNER, help="Owner id to act as")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sp = subparsers.add_parser("init-db", help="Create database tables")
    sp.set_defaults(func=_cmd_init_db)

    sp = subparsers.add_parser("add-site", help="Register a WordPress site")
    sp.add_argument("--name", required=True)
    sp.add_argument("--url", required=True, help="Site root URL")
    sp.add_argument("--username", required=True)
    sp.add_argument("--password", required=True, help="WordPress Application Password")
    sp.set_defaults(func=_cmd_add_site)

    sp = subparsers.add_parser("add-feed", help="Register an RSS/Atom feed")
    sp.add_argument("--url", required=True)
    sp.add_argument("--name", default=None)
    sp.set_defaults(func=_cmd_add_feed)

    sp = subparsers.add_parser("list", help="List schedules")
    sp.add_argument("--site-id", default=None)
    sp.add_argument("--page", type=int, default=1)
    sp.add_argument("--per-page", type=int, default=50)
    sp.add_argument("--json", action="store_true", help="Print JSON")
    sp.set_defaults(func=_cmd_list)

    sp = subparsers.add_parser("create", help="Create a schedule")
    sp.add_argument("--site-id", required=True)
    sp.add_argument("--name", required=True)
    sp.add_argument("--type", default="DAILY", help="ONCE, RECURRING, CUSTOM or a preset (default: DAILY)")
    sp.add_argument("--cron", default=None, help="5-field cron expression for RECURRING/CUSTOM")
    sp.add_argument("--timezone", default="UTC", help="IANA timezone (default: UTC)")
    sp.add_argument("--at", default=None, help="ISO datetime for ONCE schedules")
    sp.add_argument("--feed-id", default=None)
    sp.add_argument("--topic", default=None)
    sp.add_argument("--description", default=None)
    sp.add_argument("--auto-publish", action="store_true")
    sp.add_argument("--publish-status", default="draft", choices=["draft", "publish"])
    sp.add_argument("--max-articles", type=int, default=None)
    sp.set_defaults(func=_cmd_create)

    for name, func, help_text in (
        ("pause", _cmd_pause, "Pause a schedule"),
        ("resume", _cmd_resume, "Resume a schedule"),
        ("run", _cmd_run, "Run a schedule now and wait for it"),
    ):
        sp = subparsers.add_parser(name, help=help_text)
        sp.add_argument("schedule_id")
        sp.set_defaults(func=func)

    sp = subparsers.add_parser("executions", help="Show a schedule's execution history")
    sp.add_argument("schedule_id")
    sp.add_argument("--page", type=int, default=1)
    sp.add_argument("--per-page", type=int, default=20)
    sp.set_defaults(func=_cmd_executions)

    sp = subparsers.add_parser("stats", help="Schedule and run statistics")
    sp.add_argument("--site-id", default=None)
    sp.set_defaults(func=_cmd_stats)

    sp = subparsers.add_parser("jobs", help="List article jobs")
    sp.add_argument("--status", default=None)
    sp.add_argument("--site-id", default=None)
    sp.add_argument("--schedule-id", default=None)
    sp.add_argument("--page", type=int, default=1)
    sp.add_argument("--per-page", type=int, default=20)
    sp.set_defaults(func=_cmd_jobs)

    sp = subparsers.add_parser("start", help="Start the scheduler daemon")
    sp.set_defaults(func=_cmd_start)

    sp = subparsers.add_parser("serve", help="Start the API server")
    sp.add_argument("--host", default=API_HOST)
    sp.add_argument("--port", type=int, default=API_PORT)
    sp.add_argument("--no-scheduler", action="store_true", help="Do not embed the scheduler")
    sp.set_defaults(func=_cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command is None:
        parser.print_help()
        return 0

    try:
        args.func(args)
    except AutopilotError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
