"""
Runtime configuration for WP Autopilot.

Every setting is a module-level constant read from the environment once at
import time. A ``.env`` file in the working directory is honoured.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name, "")
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name, "")
    try:
        return float(value) if value else default
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

DATABASE_URL = os.getenv("WPAUTOPILOT_DATABASE_URL", "sqlite:///wpautopilot.db")

# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

# Seconds between polls for due schedules
POLL_INTERVAL = _int_env("WPAUTOPILOT_POLL_INTERVAL", 60)

# Worker pool size (schedules running at once)
MAX_CONCURRENCY = _int_env("WPAUTOPILOT_MAX_CONCURRENCY", 3)

# A claim older than this is considered abandoned by a crashed run
CLAIM_GRACE_SECONDS = _int_env("WPAUTOPILOT_CLAIM_GRACE_SECONDS", 1800)

# How long stop() waits for in-flight runs
SHUTDOWN_TIMEOUT = _int_env("WPAUTOPILOT_SHUTDOWN_TIMEOUT", 30)

# Cap on fresh items per run when a schedule does not set one
DEFAULT_MAX_ARTICLES = _int_env("WPAUTOPILOT_DEFAULT_MAX_ARTICLES", 20)

# ---------------------------------------------------------------------------
# AI providers
# ---------------------------------------------------------------------------

AI_PROVIDER = os.getenv("WPAUTOPILOT_AI_PROVIDER", "anthropic")
DEFAULT_AI_MODEL = os.getenv("WPAUTOPILOT_AI_MODEL", "")
AI_TIMEOUT_SECONDS = _float_env("WPAUTOPILOT_AI_TIMEOUT", 30.0)
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# ---------------------------------------------------------------------------
# Outbound HTTP
# ---------------------------------------------------------------------------

WP_TIMEOUT_SECONDS = _int_env("WPAUTOPILOT_WP_TIMEOUT", 30)
RSS_TIMEOUT_SECONDS = _int_env("WPAUTOPILOT_RSS_TIMEOUT", 15)
IMAGE_TIMEOUT_SECONDS = _int_env("WPAUTOPILOT_IMAGE_TIMEOUT", 15)

IMAGE_PROVIDER = os.getenv("WPAUTOPILOT_IMAGE_PROVIDER", "")
PEXELS_API_KEY = os.getenv("PEXELS_API_KEY", "")
UNSPLASH_ACCESS_KEY = os.getenv("UNSPLASH_ACCESS_KEY", "")

USER_AGENT = "WP-Autopilot/1.0"

# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

MASTER_KEY = os.getenv("WPAUTOPILOT_MASTER_KEY", "")

# ---------------------------------------------------------------------------
# API server
# ---------------------------------------------------------------------------

API_HOST = os.getenv("WPAUTOPILOT_API_HOST", "0.0.0.0")
API_PORT = _int_env("WPAUTOPILOT_API_PORT", 8780)
CORS_ORIGINS = os.getenv(
    "WPAUTOPILOT_CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

# Run the scheduler loop inside the API process
EMBED_SCHEDULER = os.getenv("WPAUTOPILOT_EMBED_SCHEDULER", "").lower() in ("true", "1", "yes")

# Owner used by the CLI when --owner is not given
DEFAULT_OWNER = os.getenv("WPAUTOPILOT_OWNER", "local")
