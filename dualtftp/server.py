from __future__ import annotations

import logging
import socketserver
from typing import Callable, Optional

from .config import TransferConfig
from .dispatch import RequestDispatcher, run_session
from .errors import TransferResult
from .storage import FileStorage
from .transport import DatagramTransport, StreamTransport

logger = logging.getLogger(__name__)

ResultCallback = Callable[[TransferResult], None]


class StreamRequestHandler(socketserver.BaseRequestHandler):

    server: StreamServer

    def handle(self) -> None:
        logger.debug("Connection established with %s:%d", *self.client_address[:2])
        transport = StreamTransport(self.request, timeout=self.server.stream_timeout)
        self.server.report(run_session(transport, self.server.dispatcher))


class DatagramRequestHandler(socketserver.BaseRequestHandler):

    server: DatagramServer

    def handle(self) -> None:
        data, sock = self.request
        logger.debug("Request datagram from %s:%d", *self.client_address[:2])
        # the transfer shares the server socket, which the transport must not close
        transport = DatagramTransport(
            sock,
            self.client_address[:2],
            timeout=self.server.dispatcher.timeout,
            owns_socket=False,
        )
        self.server.report(run_session(transport, self.server.dispatcher, data))


class _ServerMixin:
    """Storage, dispatcher and result reporting shared by both servers."""

    def _setup(
        self, config: TransferConfig, on_result: Optional[ResultCallback]
    ) -> None:
        self.config = config
        self.dispatcher = RequestDispatcher(
            FileStorage(config.storage_root), timeout=config.timeout
        )
        self.stream_timeout = config.stream_timeout
        self.on_result = on_result

    def report(self, result: TransferResult) -> None:
        if self.on_result is not None:
            self.on_result(result)


class StreamServer(_ServerMixin, socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Serves each connection on its own thread, sessions share nothing."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self, config: TransferConfig, on_result: Optional[ResultCallback] = None
    ) -> None:
        self._setup(config, on_result)
        super().__init__((config.host, config.port), StreamRequestHandler)
        listen_addr_, listen_port_ = self.socket.getsockname()[:2]
        logger.info("Serving stream binding on %s:%d", listen_addr_, listen_port_)


class DatagramServer(_ServerMixin, socketserver.UDPServer):
    """Serves one request at a time: a transfer runs to completion before the
    next request datagram is read."""

    allow_reuse_address = True
    # requests carry arbitrarily long filenames
    max_packet_size = 65507

    def __init__(
        self, config: TransferConfig, on_result: Optional[ResultCallback] = None
    ) -> None:
        self._setup(config, on_result)
        super().__init__((config.host, config.port), DatagramRequestHandler)
        listen_addr_, listen_port_ = self.socket.getsockname()[:2]
        logger.info("Serving datagram binding on %s:%d", listen_addr_, listen_port_)
