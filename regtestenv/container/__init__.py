"""Container lifecycle and port negotiation."""

from regtestenv.container.docker import (
    ContainerLifecycle,
    ContainerManager,
    ContainerStatus,
    is_docker_available,
)
from regtestenv.container.ports import MAX_PORT_ATTEMPTS, find_free_port, is_port_in_use

__all__ = [
    "ContainerLifecycle",
    "ContainerManager",
    "ContainerStatus",
    "is_docker_available",
    "MAX_PORT_ATTEMPTS",
    "find_free_port",
    "is_port_in_use",
]
