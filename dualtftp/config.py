from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_PORT = 6969
DEFAULT_LISTEN_ADDR = "0.0.0.0"

# seconds to wait for an ACK (or DATA) on the datagram binding
DEFAULT_TIMEOUT = 5.0

BLOCK_SIZE = 512
HANDSHAKE_TOKEN = b"HANDSHAKE"


def _default_storage_root() -> Path:
    from . import VENDOR, APPLICATION_NAME
    from .util.io import user_data_directory

    return user_data_directory(VENDOR, APPLICATION_NAME) / "data"


@dataclass(frozen=True)
class TransferConfig:
    """Settings shared by the servers and clients of both bindings.

    host - address to bind (server) or to reach (client).
    port - the well-known server port.
    timeout - (seconds) ACK/DATA wait on the datagram binding.
    stream_timeout - (seconds) socket timeout on the stream binding, None blocks.
    storage_root - directory the server reads from and writes to.
    """

    host: str = DEFAULT_LISTEN_ADDR
    port: int = DEFAULT_PORT
    timeout: Optional[float] = DEFAULT_TIMEOUT
    stream_timeout: Optional[float] = None
    storage_root: Path = field(default_factory=_default_storage_root)
