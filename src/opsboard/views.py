"""Pure derivations over the board's collections.

None of these functions touch state; the board calls them on access so a
view can never drift from the collection it was derived from.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from .constants import PENDING_KIND_EXECUTE, PENDING_KIND_REVIEW
from .models import Account, CurrentUser, Role, Task, TaskStatus

# Sorts after every real timestamp.
MAX_SENTINEL = float(sys.maxsize)


@dataclass(frozen=True)
class PendingItem:
    task: Task
    kind: str


def timestamp(value: Optional[datetime]) -> Optional[float]:
    """Epoch seconds; naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _first_ts(*values: Optional[datetime], default: float) -> float:
    for value in values:
        ts = timestamp(value)
        if ts is not None:
            return ts
    return default


def filter_tasks(tasks: Sequence[Task], keyword: str) -> list[Task]:
    term = keyword.strip().lower()
    if not term:
        return list(tasks)
    return [t for t in tasks if term in f"{t.id} {t.title} {t.summary}".lower()]


def available_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Open tasks, soonest deadline first, no-deadline tasks last."""
    open_tasks = [t for t in tasks if t.status is TaskStatus.AVAILABLE]
    return sorted(open_tasks, key=lambda t: _first_ts(t.deadline, default=MAX_SENTINEL))


def pending_tasks(tasks: Iterable[Task], user: CurrentUser) -> list[PendingItem]:
    """What *user* has to act on: claimed work to execute and submissions to review."""
    if not user.id:
        return []
    items: list[PendingItem] = []
    for task in tasks:
        if task.status is TaskStatus.CLAIMED and task.assignee_id == user.id:
            items.append(PendingItem(task, PENDING_KIND_EXECUTE))
    for task in tasks:
        if task.status is TaskStatus.SUBMITTED and (task.owner_id == user.id or user.role is Role.ADMIN):
            items.append(PendingItem(task, PENDING_KIND_REVIEW))
    return sorted(
        items,
        key=lambda item: _first_ts(item.task.deadline, item.task.updated_at, default=MAX_SENTINEL),
    )


def completed_tasks(collections: Iterable[Iterable[Task]], user: CurrentUser) -> list[Task]:
    """Tasks *user* completed, newest first, deduplicated across collections."""
    if not user.id:
        return []
    seen: dict[str, Task] = {}
    for collection in collections:
        for task in collection:
            if task.status is TaskStatus.COMPLETED and task.assignee_id == user.id:
                seen.setdefault(task.id, task)
    return sorted(
        seen.values(),
        key=lambda t: _first_ts(t.completed_at, t.updated_at, default=0.0),
        reverse=True,
    )


def earned_total(completed: Iterable[Task]) -> int:
    return sum(task.reward for task in completed)


def admin_count(accounts: Iterable[Account]) -> int:
    return sum(1 for account in accounts if account.role is Role.ADMIN)
