import logging
import socket

from forge.errors import PortUnavailableError

logger = logging.getLogger(__name__)


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """True when a TCP socket can bind host:port right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(base: int, span: int = 100, host: str = "127.0.0.1") -> int:
    """
    First bindable port in [base, base + span), probed in ascending order.
    Raises PortUnavailableError when the whole range is taken.
    """
    for port in range(base, base + span):
        if is_port_free(port, host):
            logger.debug("[ports] Allocated %d", port)
            return port
    raise PortUnavailableError(
        f"No available port found in range {base}-{base + span - 1}",
        {"base": base, "span": span},
    )
