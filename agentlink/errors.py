"""
Error Taxonomy

Exceptions raised by the A2A core. Each one is raised at the seam where the
failing operation was initiated:

- Registry control-plane failures surface as RegistryUnavailable
- Transport failures never reach callers; ConnectionLost only travels
  inside Disconnected events
- Message-level failures (DeliveryTimeout, RemoteError) reach the sender
- Task-level failures are reflected in the Task and raised to the requester
"""


class A2AError(Exception):
    """Base class for all agentlink errors."""


class RegistryUnavailable(A2AError):
    """A registry control-plane call failed. Treat as "no change"."""

    def __init__(self, operation: str, reason: str, status_code: int | None = None):
        self.operation = operation
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Registry {operation} failed: {reason}")


class ConnectionLost(A2AError):
    """The streaming connection dropped. Recovered by the reconnect loop."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Connection lost: {reason}")


class TransportClosed(A2AError):
    """The transport was shut down explicitly and accepts no more messages."""


class DeliveryTimeout(A2AError):
    """No correlated response arrived before the deadline."""

    def __init__(self, message_id: str, timeout: float):
        self.message_id = message_id
        self.timeout = timeout
        super().__init__(f"No response to {message_id} within {timeout:.1f}s")


class RemoteError(A2AError):
    """The remote agent answered a request with an error message."""

    def __init__(self, code: str, message: str, correlation_id: str | None = None):
        self.code = code
        self.message = message
        self.correlation_id = correlation_id
        super().__init__(f"{code}: {message}")


class UnknownMethod(A2AError):
    """An inbound request names a method with no registered handler."""

    def __init__(self, method: str | None):
        self.method = method
        super().__init__(f"Unknown method: {method}")


class UnknownPayload(A2AError):
    """A payload failed validation against the schema for its method/type."""

    def __init__(self, kind: str, detail: str):
        self.kind = kind
        self.detail = detail
        super().__init__(f"Invalid payload for {kind}: {detail}")


class NoCapableAgent(A2AError):
    """Task distribution found no agent advertising the capability."""

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(f"No agents available with capability: {capability}")


class AgentUnavailable(A2AError):
    """The chosen assignee is known to be offline."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is offline")


class TaskNotFound(A2AError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class InvalidTaskTransition(A2AError):
    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task {task_id}: illegal transition {current} -> {target}")


class NotTaskAssignee(A2AError):
    """Only the assignee moves a task to IN_PROGRESS, COMPLETED or FAILED."""

    def __init__(self, task_id: str, agent_id: str):
        self.task_id = task_id
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is not the assignee of task {task_id}")


class TaskExecutionFailed(A2AError):
    """The assignee's executor raised; the task ended in FAILED."""

    def __init__(self, task_id: str, error: str):
        self.task_id = task_id
        self.error = error
        super().__init__(f"Task {task_id} failed: {error}")


class ConversationNotFound(A2AError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")
