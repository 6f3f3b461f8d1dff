"""Lifecycle states of the Medical MCP service."""

from enum import Enum


class ServiceState(str, Enum):
    """Where the service is between construction and shutdown.

    ``ERROR`` can be entered from either transitional state and is left
    only by stopping. ``STOPPED`` is final.
    """

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


_ALLOWED = frozenset(
    (ServiceState(src), ServiceState(dst))
    for src, dst in (
        ("pending", "starting"),
        ("starting", "running"),
        ("starting", "error"),
        ("running", "stopping"),
        ("stopping", "stopped"),
        ("stopping", "error"),
        ("error", "stopping"),
    )
)


def is_valid_transition(current: ServiceState, target: ServiceState) -> bool:
    return (current, target) in _ALLOWED
