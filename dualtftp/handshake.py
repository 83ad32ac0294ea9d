"""Opening token exchange of the stream binding.

Each side writes the token, then reads exactly as many bytes back and
compares them. The datagram binding has no connection phase and skips this.
"""
from __future__ import annotations

import logging

from .config import HANDSHAKE_TOKEN
from .errors import ConnectionClosed, ProtocolError
from .transport import StreamTransport

logger = logging.getLogger(__name__)


def perform_handshake(
    transport: StreamTransport, token: bytes = HANDSHAKE_TOKEN
) -> None:
    transport.send_raw(token)
    try:
        received = transport.receive_exactly(len(token))
    except ConnectionClosed as e:
        raise ProtocolError(f"Handshake incomplete: {e}") from e

    if received != token:
        raise ProtocolError(f"Invalid handshake received: {received!r}")
    logger.debug("Handshake complete")
