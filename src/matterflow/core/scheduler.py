"""In-process cron loop for deployments without an external scheduler.

Fire times are computed with croniter in UTC. Each due tick awaits the job
to completion before the next fire time is computed, so runs never overlap.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from croniter import croniter

logger = logging.getLogger(__name__)


def validate_cron(cron: str) -> str:
    if not croniter.is_valid(cron):
        raise ValueError(f"Invalid cron expression: {cron!r}")
    return cron


def next_run(cron: str, *, now: datetime | None = None) -> datetime:
    """Compute the next fire time for a cron expression from now (UTC)."""
    anchor = now or datetime.now(UTC)
    return croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)


def seconds_until_next_run(cron: str, *, now: datetime | None = None) -> float:
    anchor = now or datetime.now(UTC)
    return max(0.0, (next_run(cron, now=anchor) - anchor).total_seconds())


async def run_on_schedule(
    cron: str,
    job: Callable[[], Awaitable[Any]],
    *,
    max_runs: int | None = None,
    clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> int:
    """Run *job* at every fire time of *cron*.

    Exceptions raised by the job are logged and the loop continues. Returns
    the number of completed runs when ``max_runs`` is reached.
    """
    validate_cron(cron)
    runs = 0
    while max_runs is None or runs < max_runs:
        delay = seconds_until_next_run(cron, now=clock())
        logger.debug("Next scheduled sync in %.1fs", delay)
        await sleep(delay)
        try:
            await job()
        except Exception:
            logger.exception("Scheduled sync run failed")
        runs += 1
    return runs
