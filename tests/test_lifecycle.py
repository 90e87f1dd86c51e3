"""Tests for task lifecycle transitions against the in-memory backend."""

from __future__ import annotations

from typing import Any

import pytest

from opsboard.devserver import DevBackend
from opsboard.errors import ApiError, LifecycleError
from opsboard.lifecycle import Transition, available_transitions, check_transition, plain_text, validate_draft
from opsboard.models import CurrentUser, Role, Task, TaskDraft, TaskPriority, TaskStatus

from conftest import seed_task


def _record_actions(client) -> list[tuple[str, str]]:
    calls: list[tuple[str, str]] = []
    original = client.api.task_action

    async def recording(task_id: str, action: str) -> Any:
        calls.append((task_id, action))
        return await original(task_id, action)

    client.api.task_action = recording
    return calls


async def _ready(make_client, username: str):
    client = await make_client(username)
    await client.board.initialize()
    return client


class TestStateMachine:
    def test_check_transition_codes(self) -> None:
        alice = CurrentUser(id="u-alice", role=Role.MEMBER)
        task = Task(id="t", status=TaskStatus.CLAIMED)
        assert check_transition(Transition.CLAIM, task, CurrentUser()).status == 401
        assert check_transition(Transition.CLAIM, None, alice).status == 404
        assert check_transition(Transition.CLAIM, task, alice).status == 409
        assert check_transition(Transition.SUBMIT, task, alice).status == 403
        assert check_transition(Transition.PUBLISH, None, alice).status == 403

    def test_available_transitions_for_roles(self) -> None:
        member = CurrentUser(id="u-alice", role=Role.MEMBER)
        admin = CurrentUser(id="u-admin", role=Role.ADMIN)
        open_task = Task(id="t", status=TaskStatus.AVAILABLE)
        assert available_transitions(open_task, member) == [Transition.CLAIM]
        assert available_transitions(open_task, admin) == [Transition.CLAIM, Transition.UPDATE, Transition.DELETE]
        done = Task(id="t", status=TaskStatus.COMPLETED)
        assert available_transitions(done, admin) == []

    def test_validate_draft(self) -> None:
        assert validate_draft(TaskDraft(title="  ", description_rich="<p>x</p>")).status == 422
        assert validate_draft(TaskDraft(title="x" * 121, description_rich="<p>x</p>")) is not None
        assert validate_draft(TaskDraft(title="ok", description_rich="<p> </p><br>")) is not None
        assert validate_draft(TaskDraft(title="ok", description_rich="x", reward=-1)) is not None
        assert validate_draft(TaskDraft(title="x" * 120, description_rich="<b>x</b>")) is None

    def test_plain_text(self) -> None:
        assert plain_text("<p>Fix&nbsp;it</p>\n<p>now</p>") == "Fix\xa0it now"


@pytest.mark.anyio
class TestMemberFlow:
    async def test_claim_on_claimed_task_is_refused_locally(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        backend.claim(task.id, backend.user_by_name("bob"))
        alice = await _ready(make_client, "alice")
        calls = _record_actions(alice)
        before = list(alice.board.tasks)

        result = await alice.engine.claim(task.id)

        assert not result.ok
        assert isinstance(result.error, LifecycleError)
        assert result.error.status == 409
        assert calls == []
        assert alice.board.tasks == before

    async def test_server_refusal_leaves_state_untouched(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        alice = await _ready(make_client, "alice")
        backend.claim(task.id, backend.user_by_name("bob"))
        before = list(alice.board.tasks)

        result = await alice.engine.claim(task.id)

        assert isinstance(result.error, ApiError)
        assert result.error.status == 409
        assert result.error.message == "Task is not available"
        assert alice.board.tasks == before

    async def test_claim_submit_verify_and_earnings(self, make_client, backend: DevBackend) -> None:
        first = seed_task(backend, "Rotate certs", bounty=30)
        second = seed_task(backend, "Clean logs", bounty=20)
        seed_task(backend, "Untouched", bounty=99)
        alice = await _ready(make_client, "alice")
        calls = _record_actions(alice)

        for task in (first, second):
            claimed = await alice.engine.claim(task.id)
            assert claimed.ok and claimed.value.status is TaskStatus.CLAIMED
            assert claimed.value.assignee_id == alice.board.user.id
            submitted = await alice.engine.submit(task.id)
            assert submitted.value.status is TaskStatus.SUBMITTED
        assert calls[1] == (first.id, "submit-progress")

        admin = await _ready(make_client, "admin")
        assert {p.task.id for p in admin.board.my_pending} == {first.id, second.id}
        for task in (first, second):
            verified = await admin.engine.verify(task.id)
            assert verified.value.status is TaskStatus.COMPLETED
            assert verified.value.completed_at is not None

        await alice.board.reload(completed=True)
        assert {t.id for t in alice.board.my_completed} == {first.id, second.id}
        assert alice.board.earned_total == 50
        assert alice.board.my_pending == []

    async def test_release_returns_task_to_pool(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        alice = await _ready(make_client, "alice")
        await alice.engine.claim(task.id)

        result = await alice.engine.release(task.id)

        assert result.value.status is TaskStatus.AVAILABLE
        assert result.value.assignee is None
        assert [t.id for t in alice.board.available] == [task.id]

    async def test_member_cannot_submit_someone_elses_task(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        backend.claim(task.id, backend.user_by_name("bob"))
        alice = await _ready(make_client, "alice")

        result = await alice.engine.submit(task.id)

        assert result.error.status == 403

    async def test_signed_out_actor_is_refused(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        client = await make_client()
        result = await client.engine.claim(task.id)
        assert result.error.status == 401


@pytest.mark.anyio
class TestReview:
    async def test_reject_restores_claimed_with_same_assignee(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        alice = await _ready(make_client, "alice")
        await alice.engine.claim(task.id)
        await alice.engine.submit(task.id)
        admin = await _ready(make_client, "admin")

        result = await admin.engine.reject(task.id)

        assert result.value.status is TaskStatus.CLAIMED
        assert result.value.assignee_id == alice.board.user.id
        assert result.value.completed_at is None
        await alice.board.reload()
        assert [p.kind for p in alice.board.my_pending] == ["execute"]

    async def test_member_cannot_review(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        backend.claim(task.id, backend.user_by_name("alice"))
        backend.submit(task.id, backend.user_by_name("alice"))
        bob = await _ready(make_client, "bob")

        result = await bob.engine.verify(task.id)

        assert result.error.status == 403


@pytest.mark.anyio
class TestAdminOperations:
    async def test_publish_normalizes_and_lists(self, make_client, backend: DevBackend) -> None:
        admin = await _ready(make_client, "admin")
        draft = TaskDraft(
            title="  Renew domain ",
            description_rich="<p>Before <b>June</b></p>",
            reward=15,
            priority=TaskPriority.HIGH,
            tags=("dns", "DNS", " ", "billing"),
        )

        result = await admin.engine.publish(draft)

        assert result.ok
        created = result.value
        assert created.title == "Renew domain"
        assert created.status is TaskStatus.AVAILABLE
        assert created.tags == ("dns", "billing")
        assert created.owner_id == admin.board.user.id
        assert created.summary == "Before June"
        assert [t.id for t in admin.board.tasks] == [created.id]

    async def test_publish_validation_blocks_call(self, make_client) -> None:
        admin = await _ready(make_client, "admin")
        result = await admin.engine.publish(TaskDraft(title="", description_rich="<p>x</p>"))
        assert result.error.status == 422
        assert admin.board.tasks == []

    async def test_member_cannot_publish(self, make_client) -> None:
        alice = await _ready(make_client, "alice")
        result = await alice.engine.publish(TaskDraft(title="x", description_rich="y"))
        assert result.error.status == 403

    async def test_update_sends_given_fields_and_ends_edit(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts", bounty=10)
        admin = await _ready(make_client, "admin")
        admin.board.start_edit(admin.board.find_task(task.id))

        result = await admin.engine.update(task.id, title="Patch all hosts", reward=25)

        assert result.value.title == "Patch all hosts"
        assert result.value.reward == 25
        assert result.value.summary == "Patch hosts details"
        assert admin.board.editing_task_id == ""

    async def test_update_rejects_blank_title(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        admin = await _ready(make_client, "admin")
        result = await admin.engine.update(task.id, title="   ")
        assert result.error.status == 422
        assert backend.tasks[task.id].title == "Patch hosts"

    async def test_delete_cancels_edit_in_progress(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        admin = await _ready(make_client, "admin")
        assert admin.board.start_edit(admin.board.find_task(task.id))

        result = await admin.engine.delete(task.id)

        assert result.ok
        assert admin.board.editing_task_id == ""
        assert admin.board.find_task(task.id) is None
        assert task.id not in backend.tasks

    async def test_delete_completed_is_refused(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        alice_user = backend.user_by_name("alice")
        backend.claim(task.id, alice_user)
        backend.submit(task.id, alice_user)
        backend.verify(task.id, backend.user_by_name("admin"))
        admin = await _ready(make_client, "admin")

        result = await admin.engine.delete(task.id)

        assert result.error.status == 409
        assert task.id in backend.tasks


@pytest.mark.anyio
class TestDrafts:
    async def test_save_then_publish_draft(self, make_client, backend: DevBackend) -> None:
        admin = await _ready(make_client, "admin")

        saved = await admin.engine.save_draft(
            TaskDraft(title=" Renew domain ", description_rich="<p>soon</p>", reward=15, tags=("dns", "DNS"))
        )

        assert saved.ok
        draft = saved.value
        assert draft.title == "Renew domain"
        assert draft.tags == ("dns",)
        assert backend.tasks[draft.id].status == "draft"
        assert [d.id for d in admin.board.drafts] == [draft.id]
        assert admin.board.find_task(draft.id) is None

        published = await admin.engine.publish_draft(draft.id)

        assert published.ok
        assert published.value.status is TaskStatus.AVAILABLE
        assert admin.board.drafts == []
        assert admin.board.find_task(draft.id) is not None
        assert backend.tasks[draft.id].published_by == backend.user_by_name("admin").id

    async def test_initialize_loads_drafts_for_admins_only(self, make_client, backend: DevBackend) -> None:
        draft = seed_task(backend, "Draft only", publish=False)
        seed_task(backend, "Patch hosts")
        admin = await _ready(make_client, "admin")
        alice = await _ready(make_client, "alice")

        assert [d.id for d in admin.board.drafts] == [draft.id]
        assert [t.title for t in admin.board.tasks] == ["Patch hosts"]
        assert alice.board.drafts == []

    async def test_member_cannot_publish_draft(self, make_client, backend: DevBackend) -> None:
        draft = seed_task(backend, "Draft only", publish=False)
        alice = await _ready(make_client, "alice")

        result = await alice.engine.publish_draft(draft.id)

        assert result.error.status == 403
        assert backend.tasks[draft.id].status == "draft"

    async def test_unknown_draft_is_refused_locally(self, make_client, backend: DevBackend) -> None:
        task = seed_task(backend, "Patch hosts")
        admin = await _ready(make_client, "admin")

        result = await admin.engine.publish_draft(task.id)

        assert isinstance(result.error, LifecycleError)
        assert result.error.status == 404

    async def test_invalid_draft_is_not_saved(self, make_client, backend: DevBackend) -> None:
        admin = await _ready(make_client, "admin")
        result = await admin.engine.save_draft(TaskDraft(title="", description_rich="<p>x</p>"))
        assert result.error.status == 422
        assert backend.tasks == {}

    async def test_losing_admin_clears_drafts(self, make_client, backend: DevBackend) -> None:
        seed_task(backend, "Draft only", publish=False)
        admin = await _ready(make_client, "admin")
        assert admin.board.drafts

        admin.context.set_role(Role.MEMBER)

        assert admin.board.drafts == []
