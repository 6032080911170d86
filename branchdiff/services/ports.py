from __future__ import annotations

import socket


def allocate_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a free TCP port on ``host`` and release it immediately.

    The port is not reserved: another process may grab it before the caller
    binds. Bind failures propagate as ``OSError``.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]
