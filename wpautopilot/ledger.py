"""
Execution Ledger: append-only record of schedule runs.

An execution is opened when the scheduler fires a schedule and closed
exactly once with its outcome and article counts. Run statistics anywhere
in the system (success rate, run counts) are computed from this ledger
and nothing else.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from wpautopilot.models import AutomationExecution, ExecutionOutcome

logger = logging.getLogger("ledger")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)


def outcome_for(created: int, failed: int, error: Optional[str] = None) -> ExecutionOutcome:
    """SUCCESS if nothing failed, PARTIAL on mixed results, FAILURE otherwise."""
    if error:
        return ExecutionOutcome.FAILURE
    if failed == 0:
        return ExecutionOutcome.SUCCESS
    if created > 0:
        return ExecutionOutcome.PARTIAL
    return ExecutionOutcome.FAILURE


def _stats_from_counts(counts: dict[ExecutionOutcome, int]) -> dict[str, Any]:
    successes = counts.get(ExecutionOutcome.SUCCESS, 0)
    partial = counts.get(ExecutionOutcome.PARTIAL, 0)
    failures = counts.get(ExecutionOutcome.FAILURE, 0)
    total = successes + partial + failures
    return {
        "total_runs": total,
        "successful_runs": successes,
        "partial_runs": partial,
        "failed_runs": failures,
        "success_rate": round(successes / total * 100) if total else 0,
    }


class ExecutionLedger:
    """Open, close and query automation executions."""

    def __init__(self, store=None) -> None:
        if store is None:
            from wpautopilot.store import get_store
            store = get_store()
        self.store = store

    def start(self, schedule_id: str, started_at: Optional[datetime] = None) -> AutomationExecution:
        started_at = started_at or datetime.now(timezone.utc)
        execution = self.store.add_execution(schedule_id, started_at)
        logger.debug("Opened execution %s for schedule %s", execution.id[:8], schedule_id[:8])
        return execution

    def finish(
        self,
        execution_id: str,
        *,
        outcome: ExecutionOutcome,
        articles_created: int = 0,
        articles_failed: int = 0,
        articles_skipped: int = 0,
        error_message: Optional[str] = None,
        finished_at: Optional[datetime] = None,
    ) -> AutomationExecution:
        """Close an execution. Raises LedgerError if it was already closed."""
        execution = self.store.finish_execution(
            execution_id,
            finished_at=finished_at or datetime.now(timezone.utc),
            outcome=outcome,
            articles_created=articles_created,
            articles_failed=articles_failed,
            articles_skipped=articles_skipped,
            error_message=error_message,
        )
        logger.info(
            "Execution %s finished: %s (created=%d, failed=%d, skipped=%d)",
            execution_id[:8],
            outcome.value,
            articles_created,
            articles_failed,
            articles_skipped,
        )
        return execution

    def list_executions(
        self, schedule_id: str, page: int = 1, per_page: int = 20
    ) -> tuple[list[AutomationExecution], int]:
        return self.store.list_executions(schedule_id, page=page, per_page=per_page)

    def schedule_stats(self, schedule_id: str) -> dict[str, Any]:
        counts = self.store.outcome_counts(schedule_id=schedule_id)
        return {"schedule_id": schedule_id, **_stats_from_counts(counts)}

    def owner_stats(self, owner_id: str, site_id: Optional[str] = None) -> dict[str, Any]:
        counts = self.store.outcome_counts(owner_id, site_id=site_id)
        return _stats_from_counts(counts)
