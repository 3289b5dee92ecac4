"""
Task Model

A unit of work requested by one agent and executed by another.

Task Lifecycle:
1. PENDING - Created by the requester, not yet picked up
2. IN_PROGRESS - The assignee started executing
3. COMPLETED / FAILED - The assignee finished (terminal)
4. CANCELLED - Requester or assignee gave up (terminal)

The assignee drives PENDING -> IN_PROGRESS -> COMPLETED|FAILED.
Either party may move a non-terminal task to CANCELLED.
completed_at is set iff the task is terminal.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import Field

from agentlink.errors import InvalidTaskTransition
from agentlink.protocol.message import Priority, WireModel, utc_now


def new_task_id() -> str:
    return f"task-{uuid4().hex[:16]}"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

# The only reachable edges of the state machine
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class TaskSpec(WireModel):
    """
    What a requester asks for. Also the payload of the assign_task method.

    id and requested_by are optional: the assignee fills them in from the
    request when a bare spec arrives.
    """
    name: str = Field(..., min_length=1, description="Operation the assignee runs")
    description: str = Field(default="")
    priority: Priority = Field(default=Priority.NORMAL)
    parameters: dict[str, Any] = Field(default_factory=dict)
    deadline: datetime | None = Field(default=None)
    id: str | None = Field(default=None)
    requested_by: str | None = Field(default=None)


class Task(WireModel):
    """A task record, mirrored by requester and assignee."""

    # === Identity ===
    id: str = Field(default_factory=new_task_id)
    name: str = Field(..., min_length=1)
    description: str = Field(default="")

    # === Parties ===
    assigned_to: str = Field(..., description="Agent executing the task")
    requested_by: str = Field(..., description="Agent that requested the task")

    # === State ===
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    priority: Priority = Field(default=Priority.NORMAL)
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: Any | None = Field(default=None)
    error: str | None = Field(default=None)

    # === Timestamps ===
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    deadline: datetime | None = Field(default=None)

    @classmethod
    def from_spec(cls, spec: TaskSpec, assigned_to: str, requested_by: str) -> "Task":
        return cls(
            id=spec.id or new_task_id(),
            name=spec.name,
            description=spec.description,
            assigned_to=assigned_to,
            requested_by=spec.requested_by or requested_by,
            priority=spec.priority,
            parameters=spec.parameters,
            deadline=spec.deadline,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target: TaskStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition(self, target: TaskStatus) -> None:
        """
        Move to target, stamping started_at/completed_at.

        Raises:
            InvalidTaskTransition: If the edge is not in the state machine
        """
        if not self.can_transition(target):
            raise InvalidTaskTransition(self.id, self.status.value, target.value)

        self.status = target
        now = utc_now()
        if target == TaskStatus.IN_PROGRESS:
            self.started_at = now
        elif target in TERMINAL_STATUSES:
            self.completed_at = now

    def start(self) -> None:
        self.transition(TaskStatus.IN_PROGRESS)

    def complete(self, result: Any) -> None:
        self.transition(TaskStatus.COMPLETED)
        self.result = result

    def fail(self, error: str) -> None:
        self.transition(TaskStatus.FAILED)
        self.error = error

    def cancel(self) -> None:
        self.transition(TaskStatus.CANCELLED)

    def is_party(self, agent_id: str) -> bool:
        return agent_id in (self.requested_by, self.assigned_to)

    def to_summary_dict(self) -> dict[str, Any]:
        """Return a summary for logging/debugging."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "assigned_to": self.assigned_to,
            "requested_by": self.requested_by,
        }
