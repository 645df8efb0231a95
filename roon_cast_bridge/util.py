"""Utility methods."""

import logging
import socket

_LOGGER = logging.getLogger(__name__)

MDNS_TARGET_IP = "224.0.0.251"


def get_local_address() -> str:
    """
    Best-effort LAN IPv4 address of this host.

    Opens a UDP socket towards the mDNS group (no packet is sent) and reads the
    address the kernel picked for it.
    """
    try:
        test_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            test_sock.setblocking(False)
            test_sock.connect((MDNS_TARGET_IP, 1))
            host = test_sock.getsockname()[0]
        finally:
            test_sock.close()
        _LOGGER.debug("Detected IP: %s", host)
        return host
    except OSError:
        _LOGGER.warning("Could not detect IP address, falling back to localhost")
        return "localhost"


