# Tasks
# Task model and state machine.
# TaskCoordinator lives in agentlink.tasks.coordinator.

from agentlink.tasks.task import Task, TaskSpec, TaskStatus

__all__ = ["Task", "TaskSpec", "TaskStatus"]
