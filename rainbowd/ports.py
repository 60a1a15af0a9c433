"""Ephemeral port allocation for backend processes."""

from __future__ import annotations

import socket


def allocate_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a free TCP port on host.

    The socket is closed before returning, so another process could in theory
    grab the port before the backend binds it.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        return int(sock.getsockname()[1])
