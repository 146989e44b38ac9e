"""Local port allocation."""
from __future__ import annotations

import socket

from .errors import PortExhausted

LOOPBACK = "127.0.0.1"


def acquire(host: str = LOOPBACK) -> int:
    """Return a port the OS considers free right now.

    The probe socket is closed before returning so the application can bind
    it. Another process may grab the port in between; the instance start then
    fails and the next reconciliation pass picks a new port.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            return int(sock.getsockname()[1])
    except OSError as e:
        raise PortExhausted(f"No free local port available: {e}") from e
