# Heartbeat
# Periodic presence refresh against the registry

from agentlink.heartbeat.monitor import HeartbeatMonitor

__all__ = ["HeartbeatMonitor"]
