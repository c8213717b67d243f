"""
Utilities for checking network ports.
"""
import socket


def is_port_open(port: int, host: str = '127.0.0.1', timeout: float = 1.0) -> bool:
    """
    Checks if something accepts TCP connections on host:port.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
