from __future__ import annotations

from datetime import datetime, timezone

import pytest

from opsboard.models import Role, TaskPriority, TaskStatus
from opsboard.repository import (
    map_account,
    map_current_user,
    map_drafts,
    map_page,
    map_status,
    map_task,
    map_tasks,
    parse_timestamp,
)


def _raw_task(**overrides):
    raw = {
        "id": "t-1",
        "title": "Rotate certs",
        "descriptionHtml": "<p>Rotate <b>all</b> certs</p>",
        "descriptionPlain": "Rotate all certs",
        "bounty": 40,
        "priority": "high",
        "status": "claimed",
        "createdBy": "u-admin",
        "publishedBy": "u-owner",
        "deadline": "2026-03-01T12:00:00Z",
        "tags": ["tls", "TLS", " ops ", ""],
        "currentAssignee": {
            "id": 7,
            "userId": "u-alice",
            "username": "Alice",
            "status": "claimed",
            "assignedAt": "2026-02-01T08:00:00Z",
        },
    }
    raw.update(overrides)
    return raw


def test_parse_timestamp() -> None:
    assert parse_timestamp("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("2026-03-01T12:00:00+02:00").utcoffset().total_seconds() == 7200
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None


def test_map_status_aliases_and_untracked() -> None:
    assert map_status("published") is TaskStatus.AVAILABLE
    assert map_status("SUBMITTED") is TaskStatus.SUBMITTED
    assert map_status("draft") is None
    assert map_status(None) is None


def test_map_task_fields() -> None:
    task = map_task(_raw_task())
    assert task.id == "t-1"
    assert task.summary == "Rotate all certs"
    assert task.description_rich.startswith("<p>")
    assert task.reward == 40
    assert task.priority is TaskPriority.HIGH
    assert task.status is TaskStatus.CLAIMED
    assert task.tags == ("tls", "ops")
    assert task.assignee is not None
    assert task.assignee_id == "u-alice"
    assert task.assignee.name == "Alice"
    assert task.owner_id == "u-owner"
    assert task.deadline == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
    assert task.completed_at is None


def test_map_task_defaults() -> None:
    task = map_task({"id": 5, "status": "available", "priority": "urgent", "bounty": -3})
    assert task.id == "5"
    assert task.title == ""
    assert task.reward == 0
    assert task.priority is TaskPriority.MEDIUM
    assert task.tags == ()
    assert task.assignee is None
    assert task.owner_id == ""


def test_completed_at_only_for_completed_tasks() -> None:
    assignee = {"userId": "u-alice", "username": "Alice", "completedAt": "2026-02-03T00:00:00Z"}
    completed = map_task(_raw_task(status="completed", currentAssignee=assignee))
    claimed = map_task(_raw_task(status="claimed", currentAssignee=assignee))
    assert completed.completed_at == datetime(2026, 2, 3, tzinfo=timezone.utc)
    assert claimed.completed_at is None


def test_available_task_ignores_stale_assignee() -> None:
    task = map_task(_raw_task(status="published"))
    assert task.status is TaskStatus.AVAILABLE
    assert task.assignee is None


def test_map_task_rejects_untracked_status() -> None:
    with pytest.raises(ValueError):
        map_task(_raw_task(status="archived"))


def test_map_tasks_skips_untracked_and_garbage() -> None:
    tasks = map_tasks([_raw_task(id="a"), _raw_task(id="b", status="draft"), "junk", _raw_task(id="c")])
    assert [t.id for t in tasks] == ["a", "c"]


def test_map_account_and_user_roles() -> None:
    account = map_account({"id": "u1", "displayName": "Ann", "roles": ["member", "admin"], "teams": ["ops"]})
    assert account.role is Role.ADMIN
    assert account.display_name == "Ann"
    assert account.teams == ("ops",)

    member = map_account({"id": "u2", "name": "Ben"})
    assert member.role is Role.MEMBER
    assert member.display_name == "Ben"

    user = map_current_user({"id": "u1", "username": "ann", "name": "Ann", "roles": ["admin"]})
    assert user.is_admin
    assert user.signed_in
    assert user.display_name == "Ann"
    assert not map_current_user(None).signed_in


def test_map_page() -> None:
    assert map_page({"items": [1, 2], "total": 9}) == ([1, 2], 9)
    assert map_page({"items": [1, 2]}) == ([1, 2], 2)
    assert map_page({"items": None, "total": True}) == ([], 0)
    assert map_page(None) == ([], 0)


def test_map_drafts_keeps_only_drafts() -> None:
    drafts = map_drafts(
        [
            _raw_task(id="d1", status="draft", bounty="7", tags=["a", "A", " "]),
            _raw_task(id="t1"),
            None,
        ]
    )
    assert [d.id for d in drafts] == ["d1"]
    assert drafts[0].reward == 7
    assert drafts[0].tags == ("a",)


def test_current_user_profile_fields() -> None:
    user = map_current_user({"id": "u1", "headline": "On call", "bio": None})
    assert user.headline == "On call"
    assert user.bio == ""
