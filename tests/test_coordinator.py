"""Tests for TaskCoordinator across connected nodes."""

import asyncio

import pytest

from agentlink.errors import (
    AgentUnavailable,
    DeliveryTimeout,
    NoCapableAgent,
    NotTaskAssignee,
    RemoteError,
    TaskExecutionFailed,
    TaskNotFound,
)
from agentlink.protocol.message import MessageType, create_notification
from agentlink.protocol.payloads import ErrorCode
from agentlink.registry.agent import Agent, AgentStatus
from agentlink.routing.router import MessageDirection
from agentlink.tasks.coordinator import WorkflowStep
from agentlink.tasks.task import TaskSpec, TaskStatus


async def echo(task):
    return {"text": task.parameters.get("text")}


class Gate:
    """Executor that blocks until released."""

    def __init__(self, result=None):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.result = result or {"done": True}

    async def __call__(self, task):
        self.started.set()
        await self.release.wait()
        return self.result


class TestAssignment:
    """Tests for the notification-based assignment flow."""

    @pytest.mark.asyncio
    async def test_echo_round_trip(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b", ["echo"])
        b.tasks.register_executor("echo", echo)

        task = await a.tasks.assign_task("b", TaskSpec(name="echo", parameters={"text": "hi"}))
        assert task.status == TaskStatus.PENDING
        assert task.requested_by == "a"
        assert task.assigned_to == "b"

        done = await a.tasks.wait_for_task(task.id, timeout=2.0)

        assert done.status == TaskStatus.COMPLETED
        assert done.result == {"text": "hi"}
        assert done.started_at is not None
        assert done.completed_at is not None

        remote = b.tasks.get_task(task.id)
        assert remote.status == TaskStatus.COMPLETED
        assert remote.result == {"text": "hi"}

    @pytest.mark.asyncio
    async def test_executor_failure(self, make_node):
        a = await make_node("a")
        b = await make_node("b")

        async def explode(task):
            raise ValueError("bad input")

        b.tasks.register_executor("explode", explode)

        task = await a.tasks.assign_task("b", TaskSpec(name="explode"))

        with pytest.raises(TaskExecutionFailed) as exc_info:
            await a.tasks.wait_for_task(task.id, timeout=2.0)

        assert exc_info.value.error == "bad input"
        assert a.tasks.get_task(task.id).status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_executor_fails_task(self, make_node):
        a = await make_node("a")
        await make_node("b")

        task = await a.tasks.assign_task("b", TaskSpec(name="translate"))

        with pytest.raises(TaskExecutionFailed) as exc_info:
            await a.tasks.wait_for_task(task.id, timeout=2.0)

        assert "No executor registered for translate" in exc_info.value.error

    @pytest.mark.asyncio
    async def test_self_assignment(self, make_node):
        a = await make_node("a", ["echo"])
        a.tasks.register_executor("echo", echo)

        task = await a.tasks.assign_task("a", TaskSpec(name="echo", parameters={"text": "me"}))
        done = await a.tasks.wait_for_task(task.id, timeout=2.0)

        assert done is task
        assert done.status == TaskStatus.COMPLETED
        assert len(a.tasks.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_offline_assignee_rejected(self, make_node):
        a = await make_node("a")
        await a.peers.upsert(Agent(id="b", status=AgentStatus.OFFLINE))

        with pytest.raises(AgentUnavailable):
            await a.tasks.assign_task("b", TaskSpec(name="echo"))

        assert a.tasks.list_tasks() == []

    @pytest.mark.asyncio
    async def test_wait_for_unknown_task(self, make_node):
        a = await make_node("a")
        with pytest.raises(TaskNotFound):
            await a.tasks.wait_for_task("task-missing")

    @pytest.mark.asyncio
    async def test_wait_times_out(self, make_node):
        a = await make_node("a")
        b = await make_node("b")
        b.tasks.register_executor("slow", Gate())

        task = await a.tasks.assign_task("b", TaskSpec(name="slow"))

        with pytest.raises(asyncio.TimeoutError):
            await a.tasks.wait_for_task(task.id, timeout=0.05)

        assert a.tasks.waiting_count == 0

    @pytest.mark.asyncio
    async def test_timeout_keeps_other_waiters(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        gate = Gate()
        b.tasks.register_executor("slow", gate)

        task = await a.tasks.assign_task("b", TaskSpec(name="slow"))
        patient = asyncio.create_task(a.tasks.wait_for_task(task.id, timeout=2.0))
        await eventually(lambda: a.tasks.waiting_count == 1)

        with pytest.raises(asyncio.TimeoutError):
            await a.tasks.wait_for_task(task.id, timeout=0.05)
        assert a.tasks.waiting_count == 1

        gate.release.set()
        done = await patient

        assert done.status == TaskStatus.COMPLETED
        assert a.tasks.waiting_count == 0


class TestAssigneeAuthority:
    """Only the assignee reports progress; either party may cancel."""

    @pytest.mark.asyncio
    async def test_requester_cannot_complete_or_fail(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        gate = Gate()
        b.tasks.register_executor("work", gate)

        task = await a.tasks.assign_task("b", TaskSpec(name="work"))
        await asyncio.wait_for(gate.started.wait(), timeout=2.0)
        await eventually(lambda: a.tasks.get_task(task.id).status == TaskStatus.IN_PROGRESS)

        with pytest.raises(NotTaskAssignee):
            await a.tasks.complete_task(task.id, {"forged": True})
        with pytest.raises(NotTaskAssignee):
            await a.tasks.fail_task(task.id, "not mine to fail")

        assert a.tasks.get_task(task.id).status == TaskStatus.IN_PROGRESS
        assert b.tasks.get_task(task.id).status == TaskStatus.IN_PROGRESS

        gate.release.set()
        done = await a.tasks.wait_for_task(task.id, timeout=2.0)

        assert done.result == {"done": True}
        assert b.tasks.get_task(task.id).result == {"done": True}

    @pytest.mark.asyncio
    async def test_assignee_ignores_completion_from_requester(self, make_node):
        a = await make_node("a")
        b = await make_node("b")
        gate = Gate()
        b.tasks.register_executor("work", gate)

        task = await a.tasks.assign_task("b", TaskSpec(name="work"))
        await asyncio.wait_for(gate.started.wait(), timeout=2.0)
        forged = create_notification("a", "b", "task_completed", {"taskId": task.id, "result": {"forged": True}})

        await b.router.dispatch(forged)

        assert b.tasks.get_task(task.id).status == TaskStatus.IN_PROGRESS
        assert b.tasks.get_task(task.id).result is None

        gate.release.set()
        done = await a.tasks.wait_for_task(task.id, timeout=2.0)
        assert done.result == {"done": True}

    @pytest.mark.asyncio
    async def test_self_assigned_task_completes(self, make_node):
        a = await make_node("a")
        gate = Gate()
        a.tasks.register_executor("work", gate)

        task = await a.tasks.assign_task("a", TaskSpec(name="work"))
        await asyncio.wait_for(gate.started.wait(), timeout=2.0)

        await a.tasks.complete_task(task.id, {"early": True})
        gate.release.set()

        done = await a.tasks.wait_for_task(task.id, timeout=1.0)
        assert done.result == {"early": True}


class TestRequestTask:
    """Tests for assignment through the assign_task request method."""

    @pytest.mark.asyncio
    async def test_acknowledged_and_completed(self, make_node):
        a = await make_node("a")
        b = await make_node("b")
        b.tasks.register_executor("echo", echo)

        task = await a.tasks.request_task("b", TaskSpec(name="echo", parameters={"text": "yo"}))
        done = await a.tasks.wait_for_task(task.id, timeout=2.0)

        assert done.result == {"text": "yo"}
        assert b.tasks.get_task(task.id).requested_by == "a"

    @pytest.mark.asyncio
    async def test_unreachable_assignee_cancels_task(self, make_node):
        a = await make_node("a")

        with pytest.raises(RemoteError) as exc_info:
            await a.tasks.request_task("ghost", TaskSpec(name="echo"))

        assert exc_info.value.code == ErrorCode.AGENT_UNREACHABLE.value
        [task] = a.tasks.list_tasks()
        assert task.status == TaskStatus.CANCELLED
        assert task.error

    @pytest.mark.asyncio
    async def test_unacknowledged_request_cancels_on_assignee(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        gate = Gate()
        b.tasks.register_executor("work", gate)

        async def slow_assignment(message, direction):
            if direction == MessageDirection.INBOUND and message.method == "assign_task":
                await asyncio.sleep(0.3)

        b.router.add_message_hook(slow_assignment)

        with pytest.raises(DeliveryTimeout):
            await a.tasks.request_task("b", TaskSpec(name="work"), expires_in=0.1)

        [task] = a.tasks.list_tasks()
        assert task.status == TaskStatus.CANCELLED
        assert task.error

        await eventually(lambda: b.tasks.get_task(task.id) is not None)
        await eventually(lambda: b.tasks.get_task(task.id).status == TaskStatus.CANCELLED)
        gate.release.set()
        await asyncio.sleep(0.05)

        assert b.tasks.get_task(task.id).status == TaskStatus.CANCELLED
        assert b.tasks.get_task(task.id).result is None

    @pytest.mark.asyncio
    async def test_cancel_before_assignment_arrives(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        gate = Gate()
        b.tasks.register_executor("work", gate)

        await b.router.dispatch(create_notification("a", "b", "task_cancelled", {"taskId": "task-early"}))
        await a.tasks.assign_task("b", TaskSpec(name="work", id="task-early"))

        await eventually(lambda: b.tasks.get_task("task-early") is not None)
        await asyncio.sleep(0.05)

        assert b.tasks.get_task("task-early").status == TaskStatus.CANCELLED
        assert not gate.started.is_set()

    @pytest.mark.asyncio
    async def test_cancel_from_stranger_before_assignment_ignored(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        b.tasks.register_executor("echo", echo)

        await b.router.dispatch(create_notification("mallory", "b", "task_cancelled", {"taskId": "task-early"}))
        task = await a.tasks.assign_task("b", TaskSpec(name="echo", id="task-early"))

        done = await a.tasks.wait_for_task(task.id, timeout=2.0)
        assert done.status == TaskStatus.COMPLETED


class TestDistribution:
    @pytest.mark.asyncio
    async def test_no_capable_agent(self, make_node):
        a = await make_node("a")
        await make_node("b", ["math"])

        with pytest.raises(NoCapableAgent) as exc_info:
            await a.tasks.distribute_task(TaskSpec(name="translate"), "translate")

        assert exc_info.value.capability == "translate"
        assert a.tasks.list_tasks() == []

    @pytest.mark.asyncio
    async def test_picks_a_capable_peer(self, make_node):
        a = await make_node("a")
        await make_node("b", ["echo"])
        await make_node("c", ["echo"])
        await make_node("d", ["math"])

        chosen = set()
        for _ in range(10):
            task = await a.tasks.distribute_task(TaskSpec(name="echo"), "echo")
            chosen.add(task.assigned_to)

        assert chosen <= {"b", "c"}
        assert chosen

    @pytest.mark.asyncio
    async def test_offline_peers_are_skipped(self, make_node, directory):
        a = await make_node("a")
        await make_node("b", ["echo"])
        await directory.update_status("b", AgentStatus.OFFLINE)

        with pytest.raises(NoCapableAgent):
            await a.tasks.distribute_task(TaskSpec(name="echo"), "echo")

    @pytest.mark.asyncio
    async def test_workflow_records_unassignable_steps(self, make_node):
        a = await make_node("a")
        await make_node("b", ["echo"])
        await make_node("c", ["math"])

        result = await a.tasks.coordinate_workflow([
            WorkflowStep("echo", TaskSpec(name="echo")),
            WorkflowStep("translate", TaskSpec(name="translate")),
            WorkflowStep("math", TaskSpec(name="add")),
        ])

        assert not result.ok
        assert [t.assigned_to for t in result.tasks] == ["b", "c"]
        assert len(result.failures) == 1
        assert isinstance(result.failures[0].error, NoCapableAgent)


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_in_progress_discards_late_result(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        gate = Gate()
        b.tasks.register_executor("slow", gate)

        task = await a.tasks.assign_task("b", TaskSpec(name="slow"))
        await asyncio.wait_for(gate.started.wait(), timeout=2.0)

        cancelled = await a.tasks.cancel_task(task.id)
        assert cancelled.status == TaskStatus.CANCELLED

        await eventually(lambda: b.tasks.get_task(task.id).status == TaskStatus.CANCELLED)
        gate.release.set()
        await asyncio.sleep(0.05)

        assert b.tasks.get_task(task.id).status == TaskStatus.CANCELLED
        assert b.tasks.get_task(task.id).result is None
        assert a.tasks.get_task(task.id).status == TaskStatus.CANCELLED

        done = await a.tasks.wait_for_task(task.id, timeout=1.0)
        assert done.status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, make_node):
        a = await make_node("a")
        b = await make_node("b")
        b.tasks.register_executor("echo", echo)

        task = await a.tasks.assign_task("b", TaskSpec(name="echo"))
        await a.tasks.wait_for_task(task.id, timeout=2.0)

        again = await a.tasks.cancel_task(task.id)

        assert again.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_twice_notifies_once(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b")
        gate = Gate()
        b.tasks.register_executor("slow", gate)

        cancellations = []

        async def record(message, direction):
            if (
                direction == MessageDirection.OUTBOUND
                and message.type == MessageType.NOTIFICATION
                and message.payload.get("type") == "task_cancelled"
            ):
                cancellations.append(message.id)

        a.router.add_message_hook(record)

        task = await a.tasks.assign_task("b", TaskSpec(name="slow"))
        await asyncio.wait_for(gate.started.wait(), timeout=2.0)

        first = await a.tasks.cancel_task(task.id)
        cancelled_at = first.completed_at
        second = await a.tasks.cancel_task(task.id)

        assert second is first
        assert second.status == TaskStatus.CANCELLED
        assert second.completed_at == cancelled_at
        assert len(cancellations) == 1

        await eventually(lambda: b.tasks.get_task(task.id).status == TaskStatus.CANCELLED)
        gate.release.set()

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(self, make_node):
        a = await make_node("a")
        with pytest.raises(TaskNotFound):
            await a.tasks.cancel_task("task-missing")


class TestMirror:
    @pytest.mark.asyncio
    async def test_updates_from_non_party_ignored(self, make_node):
        a = await make_node("a")
        b = await make_node("b")
        b.tasks.register_executor("slow", Gate())

        task = await a.tasks.assign_task("b", TaskSpec(name="slow"))
        forged = create_notification("mallory", "a", "task_completed", {"taskId": task.id, "result": "forged"})

        await a.router.dispatch(forged)

        assert a.tasks.get_task(task.id).status != TaskStatus.COMPLETED
        assert a.tasks.get_task(task.id).result is None

    @pytest.mark.asyncio
    async def test_list_tasks_filters(self, make_node):
        a = await make_node("a")
        b = await make_node("b")
        b.tasks.register_executor("echo", echo)

        first = await a.tasks.assign_task("b", TaskSpec(name="echo"))
        await a.tasks.wait_for_task(first.id, timeout=2.0)
        await a.tasks.assign_task("b", TaskSpec(name="missing"))

        assert [t.id for t in a.tasks.list_tasks(status=TaskStatus.COMPLETED)] == [first.id]
        assert len(a.tasks.list_tasks(assigned_to="b")) == 2
        assert a.tasks.list_tasks(requested_by="b") == []
