"""Tests for the Task state machine."""

import pytest

from agentlink.errors import InvalidTaskTransition
from agentlink.tasks.task import TERMINAL_STATUSES, Task, TaskSpec, TaskStatus


def make_task(**kwargs) -> Task:
    return Task(name="echo", assigned_to="b", requested_by="a", **kwargs)


class TestTaskLifecycle:
    """Tests for Task transitions."""

    def test_new_task_is_pending(self):
        task = make_task()
        assert task.status == TaskStatus.PENDING
        assert task.id.startswith("task-")
        assert task.started_at is None
        assert task.completed_at is None

    def test_happy_path(self):
        task = make_task()
        task.start()
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.started_at is not None
        assert task.completed_at is None

        task.complete({"text": "hi"})
        assert task.status == TaskStatus.COMPLETED
        assert task.result == {"text": "hi"}
        assert task.completed_at is not None

    def test_fail_records_error(self):
        task = make_task()
        task.start()
        task.fail("boom")
        assert task.status == TaskStatus.FAILED
        assert task.error == "boom"
        assert task.is_terminal

    def test_cancel_from_pending(self):
        task = make_task()
        task.cancel()
        assert task.status == TaskStatus.CANCELLED
        assert task.completed_at is not None

    def test_pending_cannot_complete(self):
        task = make_task()
        with pytest.raises(InvalidTaskTransition) as exc_info:
            task.complete("x")
        assert exc_info.value.current == "pending"
        assert exc_info.value.target == "completed"
        assert task.status == TaskStatus.PENDING

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, terminal):
        task = make_task(status=terminal)
        for target in TaskStatus:
            assert not task.can_transition(target)

    def test_completed_at_iff_terminal(self):
        task = make_task()
        task.start()
        assert (task.completed_at is not None) == task.is_terminal
        task.cancel()
        assert (task.completed_at is not None) == task.is_terminal


class TestTaskSpec:
    def test_from_spec_keeps_requested_id(self):
        spec = TaskSpec(name="echo", parameters={"text": "hi"}, id="task-fixed", requested_by="a")
        task = Task.from_spec(spec, assigned_to="b", requested_by="someone-else")

        assert task.id == "task-fixed"
        assert task.requested_by == "a"
        assert task.assigned_to == "b"
        assert task.parameters == {"text": "hi"}

    def test_from_spec_generates_id(self):
        task = Task.from_spec(TaskSpec(name="echo"), assigned_to="b", requested_by="a")
        assert task.id.startswith("task-")
        assert task.requested_by == "a"

    def test_is_party(self):
        task = make_task()
        assert task.is_party("a")
        assert task.is_party("b")
        assert not task.is_party("c")
