"""
WP Autopilot

Scheduled article generation and publishing for WordPress sites.
Schedules fire automation runs; each run turns RSS items or a topic into
jobs that move through AI generation and WordPress publishing.

Usage:
    from wpautopilot.scheduler import get_scheduler

    scheduler = get_scheduler()
    await scheduler.start()
"""

__version__ = "1.0.0"
