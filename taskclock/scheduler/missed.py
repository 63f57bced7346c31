"""Missed trigger recovery — detect runs skipped while the process was down.

A task that missed any number of triggers gets at most one catch-up run on
startup. Individual missed occurrences are never replayed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from taskclock.scheduler.models import ScheduledTask
    from taskclock.scheduler.store import TaskStore

logger = logging.getLogger(__name__)


def find_missed_tasks(store: TaskStore, now: datetime) -> list[ScheduledTask]:
    """Return enabled cron tasks whose on-disk ``nextRun`` is already past.

    Returns them oldest missed trigger first.
    """
    missed: list[tuple[datetime, ScheduledTask]] = []
    for task in store.list_enabled_tasks():
        if not task.cron_expression:
            continue
        persisted = store.persisted_next_run(task.id)
        if persisted is None or persisted > now:
            continue
        # Already ran for that trigger before the shutdown
        if task.last_run is not None and task.last_run >= persisted:
            continue
        missed.append((persisted, task))

    missed.sort(key=lambda pair: pair[0])
    for persisted, task in missed:
        logger.info(
            "Missed scheduled run of '%s' (%s), was due %s",
            task.name,
            task.id,
            persisted.isoformat(),
        )
    if missed:
        logger.info("Found %d missed scheduled task(s)", len(missed))
    return [task for _, task in missed]
