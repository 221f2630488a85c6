"""
Local port probing and forward scanning.

Each scan is independent: two scans that start from different ports may
land on the same free port if nothing binds the first result in between.
"""

from __future__ import annotations

import contextlib
import logging
import socket
from typing import Callable

from regtestenv.core.errors import PortConflictError

logger = logging.getLogger(__name__)

MAX_PORT_ATTEMPTS = 100

PortProbe = Callable[[int], bool]


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if binding ``host:port`` fails."""
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def find_free_port(
    start: int,
    max_attempts: int = MAX_PORT_ATTEMPTS,
    in_use: PortProbe = is_port_in_use,
    role: str = "port",
) -> int:
    """
    Linear forward scan for the first free port.

    Args:
        start: First port to try.
        max_attempts: Number of consecutive ports to try.
        in_use: Probe used to test each port.
        role: Label used in logs and errors (``RPC``, ``P2P``, ``proxy``).

    Returns:
        A port ``>= start`` that the probe reports free.

    Raises:
        PortConflictError: If every port in the window is taken.
    """
    for port in range(start, start + max_attempts):
        if port > 65535:
            break
        if not in_use(port):
            if port != start:
                logger.info("%s port %d in use, using %d", role, start, port)
            return port

    last = min(start + max_attempts - 1, 65535)
    raise PortConflictError(
        f"No free {role} port found in range {start}-{last}",
        suggestions=[
            f"Check what's using it: lsof -i :{start}",
            "Stop the process holding the port and retry",
            "Change the port in the profile configuration",
        ],
    )


__all__ = ["MAX_PORT_ATTEMPTS", "find_free_port", "is_port_in_use"]
