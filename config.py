# GRBL Server Configuration
# Edit these values to change the defaults used when no flag is given

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

# ============================================================
# NETWORK
# ============================================================

# HTTP and WebSocket share this port
DEFAULT_HTTP_PORT = 8000
DEFAULT_HOST = '0.0.0.0'

# Largest WebSocket message accepted (uploads carry whole programs)
MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10 MiB

# WebSocket upgrades are only accepted from these networks
ALLOWED_NETWORKS = (
    '127.0.0.0/8',
    '10.0.0.0/8',
    '192.168.0.0/16',
    '::1/128',
)

# Static files for the browser UI
ASSETS_DIR = 'browser'

# ============================================================
# SERIAL LINK
# ============================================================

DEFAULT_SERIAL_PORT = '/dev/ttyACM0'
DEFAULT_BAUD_RATE = 115200

# Delay before reopening a failed link (seconds, no backoff)
REOPEN_DELAY = 5.0

# Status query interval while the link is open (seconds)
STATUS_POLL_INTERVAL = 0.2  # 200ms

# Per-command timeout (seconds). None waits forever; a timeout is
# treated as a link failure.
COMMAND_TIMEOUT: Optional[float] = None

# ============================================================
# SERVER CONFIG
# ============================================================

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class ServerConfig:
    serial_port: str = DEFAULT_SERIAL_PORT
    serial_baud: int = DEFAULT_BAUD_RATE
    server_port: int = DEFAULT_HTTP_PORT
    host: str = DEFAULT_HOST
    assets_dir: str = ASSETS_DIR
    reopen_delay: float = REOPEN_DELAY
    status_poll_interval: float = STATUS_POLL_INTERVAL
    command_timeout: Optional[float] = COMMAND_TIMEOUT
    allowed_networks: Sequence[str] = ALLOWED_NETWORKS
    networks: List[Network] = field(init=False, repr=False)

    def __post_init__(self):
        self.networks = [ipaddress.ip_network(n, strict=False) for n in self.allowed_networks]

    def to_dict(self) -> Dict[str, Any]:
        """Public subset served at GET /config."""
        return {
            'serialPort': self.serial_port,
            'serialBaud': self.serial_baud,
            'serverPort': self.server_port,
        }

    def is_allowed_address(self, host: str) -> bool:
        """Check a peer address against the allowed networks."""
        try:
            # Strip IPv6 zone index (fe80::1%eth0)
            addr = ipaddress.ip_address(host.split('%', 1)[0])
        except ValueError:
            return False
        if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
            addr = addr.ipv4_mapped
        return any(addr in net for net in self.networks if net.version == addr.version)
