"""
Task Coordinator

Requester side:
- assign_task() / request_task() create a task and hand it to an assignee
- distribute_task() picks a capable, non-offline peer at random
- coordinate_workflow() distributes several steps in order
- task_* notifications update the local mirror along legal transitions
  (started/completed/failed only from the assignee, cancelled from either party)

Assignee side:
- task_assigned notifications and assign_task requests are accepted,
  moved to IN_PROGRESS and run through the executor registered for
  task.name; the outcome is reported back as task_completed/task_failed

Cancellation is cooperative: a running executor is never interrupted,
its result is discarded once the task is no longer IN_PROGRESS.
There is no automatic retry.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from agentlink.errors import (
    AgentUnavailable,
    NoCapableAgent,
    NotTaskAssignee,
    TaskExecutionFailed,
    TaskNotFound,
    TransportClosed,
)
from agentlink.protocol.message import Message
from agentlink.protocol.payloads import (
    AssignTaskResult,
    BuiltinMethod,
    Notification,
    NotificationType,
    TaskAssignedData,
    TaskUpdateData,
    validate_payload,
)
from agentlink.registry.agent import AgentStatus
from agentlink.tasks.task import Task, TaskSpec, TaskStatus, new_task_id

if TYPE_CHECKING:
    from agentlink.registry.peers import PeerSnapshot
    from agentlink.routing.router import MessageRouter

logger = logging.getLogger(__name__)


# Receives the task, returns a JSON-serializable result
TaskExecutor = Callable[[Task], Awaitable[Any]]

# Cancellations remembered for tasks whose assignment has not arrived yet
_EARLY_CANCEL_LIMIT = 256

_UPDATE_TARGETS = {
    NotificationType.TASK_STARTED: TaskStatus.IN_PROGRESS,
    NotificationType.TASK_COMPLETED: TaskStatus.COMPLETED,
    NotificationType.TASK_FAILED: TaskStatus.FAILED,
    NotificationType.TASK_CANCELLED: TaskStatus.CANCELLED,
}


@dataclass
class WorkflowStep:
    capability: str
    spec: TaskSpec


@dataclass
class StepOutcome:
    step: WorkflowStep
    task: Task | None = None
    error: Exception | None = None


@dataclass
class WorkflowResult:
    """Per-step outcome of coordinate_workflow(), in step order."""
    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def tasks(self) -> list[Task]:
        return [o.task for o in self.outcomes if o.task is not None]

    @property
    def failures(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.error is not None]

    @property
    def ok(self) -> bool:
        return not self.failures


class TaskCoordinator:
    """
    Tracks every task this agent requested or executes.

    Both parties hold their own copy of a task; the assignee's copy is
    authoritative and the requester's mirror follows its notifications.
    """

    def __init__(
        self,
        router: "MessageRouter",
        peers: "PeerSnapshot",
        rng: random.Random | None = None,
    ):
        """
        Initialize the coordinator and register its handlers on the router.

        Args:
            router: Router of the local agent
            peers: Peer snapshot used for assignee selection
            rng: Random source for distribute_task (injectable for tests)
        """
        self._router = router
        self._peers = peers
        self._rng = rng or random.Random()

        # task_id -> Task
        self._tasks: dict[str, Task] = {}
        self._executors: dict[str, TaskExecutor] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._waiters: dict[str, int] = {}
        # task_id -> agent that cancelled it before the assignment arrived
        self._early_cancels: dict[str, str] = {}
        self._running: set[asyncio.Task] = set()

        router.register_method(
            BuiltinMethod.ASSIGN_TASK.value,
            self._handle_assign_request,
            TaskSpec,
        )
        router.on_notification(NotificationType.TASK_ASSIGNED, self._on_task_assigned)
        for notification_type in _UPDATE_TARGETS:
            router.on_notification(notification_type, self._on_task_update)

    @property
    def agent_id(self) -> str:
        return self._router.agent_id

    def register_executor(self, name: str, executor: TaskExecutor) -> None:
        """Run executor for every assigned task named name."""
        self._executors[name] = executor

    async def close(self) -> None:
        """Cancel running executors. Their tasks keep their current state."""
        running = list(self._running)
        for job in running:
            job.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    @property
    def waiting_count(self) -> int:
        """Tasks that at least one wait_for_task() call is blocked on."""
        return len(self._done_events)

    def list_tasks(
        self,
        status: TaskStatus | None = None,
        assigned_to: str | None = None,
        requested_by: str | None = None,
    ) -> list[Task]:
        tasks = list(self._tasks.values())
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        if assigned_to is not None:
            tasks = [t for t in tasks if t.assigned_to == assigned_to]
        if requested_by is not None:
            tasks = [t for t in tasks if t.requested_by == requested_by]
        return tasks

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _require_assigned(self, task_id: str) -> Task:
        task = self._require(task_id)
        if task.assigned_to != self.agent_id:
            raise NotTaskAssignee(task.id, self.agent_id)
        return task

    # =========================================================================
    # Requester side
    # =========================================================================

    def _check_assignee(self, agent_id: str) -> None:
        peer = self._peers.get(agent_id)
        if peer is not None and peer.status == AgentStatus.OFFLINE:
            raise AgentUnavailable(agent_id)

    async def assign_task(self, agent_id: str, spec: TaskSpec) -> Task:
        """
        Create a PENDING task and notify the assignee (task_assigned).

        Raises:
            AgentUnavailable: The peer snapshot knows the agent as offline
        """
        self._check_assignee(agent_id)

        task = Task.from_spec(spec, assigned_to=agent_id, requested_by=self.agent_id)
        self._tasks[task.id] = task
        logger.info(f"Assigning task {task.id} ({task.name}) to {agent_id}")

        await self._router.notify(
            agent_id,
            NotificationType.TASK_ASSIGNED,
            TaskAssignedData(task=task),
            priority=task.priority,
        )
        return task

    async def request_task(
        self,
        agent_id: str,
        spec: TaskSpec,
        expires_in: float | None = None,
    ) -> Task:
        """
        Assign through the assign_task request method and wait for the
        assignee's acknowledgement.

        A task whose acknowledgement never arrives (or is an error) is
        cancelled with the error recorded, the assignee is sent
        task_cancelled, then the error is raised.

        Raises:
            AgentUnavailable: The peer snapshot knows the agent as offline
            DeliveryTimeout: No acknowledgement in time
            RemoteError: The assignee rejected the request
        """
        self._check_assignee(agent_id)

        spec = spec.model_copy(update={
            "id": spec.id or new_task_id(),
            "requested_by": self.agent_id,
        })
        task = Task.from_spec(spec, assigned_to=agent_id, requested_by=self.agent_id)
        self._tasks[task.id] = task
        logger.info(f"Requesting task {task.id} ({task.name}) from {agent_id}")

        try:
            reply = await self._router.request(
                agent_id,
                BuiltinMethod.ASSIGN_TASK.value,
                spec,
                expires_in=expires_in,
                priority=task.priority,
            )
            validate_payload(AssignTaskResult, reply.payload, BuiltinMethod.ASSIGN_TASK.value)
        except Exception as e:
            if not task.is_terminal:
                task.error = str(e) or type(e).__name__
                await self.cancel_task(task.id)
            raise

        return task

    async def distribute_task(self, spec: TaskSpec, capability: str) -> Task:
        """
        Assign to a uniformly random non-offline peer advertising capability.

        Raises:
            NoCapableAgent: No such peer; no task is created
            RegistryUnavailable: The peer set could not be refreshed
        """
        agents = await self._peers.agents()
        candidates = [
            a for a in agents
            if a.has_capability(capability) and a.status != AgentStatus.OFFLINE
        ]
        if not candidates:
            raise NoCapableAgent(capability)

        agent = self._rng.choice(candidates)
        logger.debug(f"Distributing {spec.name} to {agent.id} out of {len(candidates)} candidates")
        return await self.assign_task(agent.id, spec)

    async def coordinate_workflow(self, steps: list[WorkflowStep]) -> WorkflowResult:
        """Distribute each step in order; a step nobody can run is recorded and skipped."""
        result = WorkflowResult()
        for step in steps:
            try:
                task = await self.distribute_task(step.spec, step.capability)
                result.outcomes.append(StepOutcome(step=step, task=task))
            except NoCapableAgent as e:
                logger.warning(f"Workflow step {step.spec.name} skipped: {e}")
                result.outcomes.append(StepOutcome(step=step, error=e))
        return result

    async def wait_for_task(self, task_id: str, timeout: float | None = None) -> Task:
        """
        Wait until the task is terminal.

        Returns:
            The completed or cancelled task

        Raises:
            TaskNotFound: Unknown task id
            TaskExecutionFailed: The task ended FAILED
            asyncio.TimeoutError: Still not terminal after timeout
        """
        task = self._require(task_id)
        if not task.is_terminal:
            event = self._done_events.setdefault(task_id, asyncio.Event())
            self._waiters[task_id] = self._waiters.get(task_id, 0) + 1
            try:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            finally:
                remaining = self._waiters.pop(task_id) - 1
                if remaining:
                    self._waiters[task_id] = remaining
                elif not event.is_set():
                    self._done_events.pop(task_id, None)

        if task.status == TaskStatus.FAILED:
            raise TaskExecutionFailed(task.id, task.error or "unknown error")
        return task

    # =========================================================================
    # Both sides
    # =========================================================================

    async def complete_task(self, task_id: str, result: Any) -> Task:
        """
        IN_PROGRESS -> COMPLETED, then notify the requester.

        Raises:
            TaskNotFound, NotTaskAssignee, InvalidTaskTransition
        """
        task = self._require_assigned(task_id)
        task.complete(result)
        self._settle(task)
        logger.info(f"Task {task.id} completed")
        await self._notify_counterpart(
            task,
            NotificationType.TASK_COMPLETED,
            TaskUpdateData(task_id=task.id, task=task, result=result),
        )
        return task

    async def fail_task(self, task_id: str, error: str) -> Task:
        """
        IN_PROGRESS -> FAILED with error, then notify the requester.

        Raises:
            TaskNotFound, NotTaskAssignee, InvalidTaskTransition
        """
        task = self._require_assigned(task_id)
        task.fail(error)
        self._settle(task)
        logger.warning(f"Task {task.id} failed: {error}")
        await self._notify_counterpart(
            task,
            NotificationType.TASK_FAILED,
            TaskUpdateData(task_id=task.id, task=task, error=error),
        )
        return task

    async def cancel_task(self, task_id: str) -> Task:
        """
        Cancel a PENDING or IN_PROGRESS task and notify the other party.
        Terminal tasks are returned unchanged.

        Raises:
            TaskNotFound: Unknown task id
        """
        task = self._require(task_id)
        if task.is_terminal:
            logger.debug(f"Task {task.id} already {task.status.value}, cancel ignored")
            return task

        task.cancel()
        self._settle(task)
        logger.info(f"Task {task.id} cancelled by {self.agent_id}")
        await self._notify_counterpart(
            task,
            NotificationType.TASK_CANCELLED,
            TaskUpdateData(task_id=task.id, task=task),
        )
        return task

    def _settle(self, task: Task) -> None:
        event = self._done_events.pop(task.id, None)
        if event is not None:
            event.set()

    async def _notify_counterpart(
        self,
        task: Task,
        notification_type: NotificationType,
        data: TaskUpdateData,
    ) -> None:
        counterpart = task.requested_by if task.assigned_to == self.agent_id else task.assigned_to
        if counterpart == self.agent_id:
            return
        try:
            await self._router.notify(counterpart, notification_type, data, priority=task.priority)
        except TransportClosed:
            logger.warning(f"Could not send {notification_type.value} for {task.id}: transport closed")

    # =========================================================================
    # Assignee side
    # =========================================================================

    async def _handle_assign_request(self, message: Message, spec: TaskSpec) -> AssignTaskResult:
        task = Task.from_spec(spec, assigned_to=self.agent_id, requested_by=message.from_agent)
        accepted = self._accept(task)
        return AssignTaskResult(task=accepted.model_copy(deep=True))

    async def _on_task_assigned(self, notification: Notification) -> None:
        data: TaskAssignedData = notification.data
        if data.task.assigned_to != self.agent_id:
            logger.warning(
                f"Ignoring task {data.task.id} from {notification.sender}: "
                f"assigned to {data.task.assigned_to}"
            )
            return
        self._accept(data.task)

    def _accept(self, task: Task) -> Task:
        existing = self._tasks.get(task.id)
        if existing is not None:
            if existing.status != TaskStatus.PENDING or existing.assigned_to != self.agent_id:
                logger.warning(f"Duplicate assignment of task {task.id} ignored")
                return existing
            # Self-assignment: requester and assignee share one record
            task = existing
        else:
            self._tasks[task.id] = task
            cancelled_by = self._early_cancels.pop(task.id, None)
            if cancelled_by is not None and cancelled_by == task.requested_by:
                task.cancel()
                logger.info(f"Task {task.id} was cancelled by {cancelled_by} before it arrived")
                return task

        job = asyncio.create_task(self._execute(task), name=f"task_{task.id}")
        self._running.add(job)
        job.add_done_callback(self._running.discard)
        return task

    async def _execute(self, task: Task) -> None:
        if task.status != TaskStatus.PENDING:
            return

        task.start()
        logger.info(f"Task {task.id} ({task.name}) started for {task.requested_by}")
        await self._notify_counterpart(
            task,
            NotificationType.TASK_STARTED,
            TaskUpdateData(task_id=task.id, task=task),
        )

        executor = self._executors.get(task.name)
        if executor is None:
            await self.fail_task(task.id, f"No executor registered for {task.name}")
            return

        try:
            result = await executor(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Executor for {task.name} raised on {task.id}")
            if task.status == TaskStatus.IN_PROGRESS:
                await self.fail_task(task.id, str(e) or type(e).__name__)
            return

        if task.status != TaskStatus.IN_PROGRESS:
            logger.info(f"Discarding result of task {task.id}: now {task.status.value}")
            return

        await self.complete_task(task.id, result)

    # =========================================================================
    # Mirror updates
    # =========================================================================

    async def _on_task_update(self, notification: Notification) -> None:
        data: TaskUpdateData = notification.data
        task = self._tasks.get(data.task_id)
        if task is None:
            logger.debug(f"{notification.type.value} for unknown task {data.task_id}")
            if notification.type == NotificationType.TASK_CANCELLED:
                self._remember_early_cancel(data.task_id, notification.sender)
            return
        if not task.is_party(notification.sender):
            logger.warning(
                f"Ignoring {notification.type.value} for {task.id} from non-party {notification.sender}"
            )
            return
        # Progress is reported by the assignee; either party may cancel
        if notification.type != NotificationType.TASK_CANCELLED and notification.sender != task.assigned_to:
            logger.warning(
                f"Ignoring {notification.type.value} for {task.id} from {notification.sender}: "
                f"assigned to {task.assigned_to}"
            )
            return

        target = _UPDATE_TARGETS[notification.type]
        if task.status == target or task.is_terminal:
            return

        # task_started may have been lost; the mirror still passes through IN_PROGRESS
        if task.status == TaskStatus.PENDING and target in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            task.start()

        if not task.can_transition(target):
            logger.warning(f"Ignoring {notification.type.value} for {task.id} in {task.status.value}")
            return

        task.transition(target)
        if target == TaskStatus.COMPLETED:
            task.result = data.result
        elif target == TaskStatus.FAILED:
            task.error = data.error or "unknown error"

        if task.is_terminal:
            self._settle(task)
        logger.info(f"Task {task.id} is now {task.status.value} (reported by {notification.sender})")

    def _remember_early_cancel(self, task_id: str, sender: str) -> None:
        if len(self._early_cancels) >= _EARLY_CANCEL_LIMIT:
            del self._early_cancels[next(iter(self._early_cancels))]
        self._early_cancels[task_id] = sender
