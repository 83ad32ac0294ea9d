from __future__ import annotations

import logging
import socket
from abc import ABC, abstractmethod
from typing import Optional

from .config import DEFAULT_PORT, DEFAULT_TIMEOUT, TransferConfig
from .errors import (
    ConnectionClosed,
    ProtocolError,
    RemoteError,
    TftpException,
    TransferResult,
    TransferStatus,
    TransportError,
)
from .handshake import perform_handshake
from .packets import ErrorPacket, ReadRequestPacket, WriteRequestPacket
from .storage import PartialFile, open_local_file, sanitize_filename
from .transfer import ReceiveTransfer, SendTransfer, Transfer, await_ack
from .transport import Binding, DatagramTransport, PacketTransport, StreamTransport
from .util.io import PathLike, to_path

logger = logging.getLogger(__name__)


class TftpClient(ABC):
    """Runs one transfer per call against a server of the matching binding.

    Failures come back as a TransferResult instead of an exception, it is up
    to the caller whether to try again.
    """

    binding: Binding

    def __init__(
        self,
        server_host: str,
        server_port: int = DEFAULT_PORT,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        stream_timeout: Optional[float] = None,
    ) -> None:
        self.server_host = server_host
        self.server_port = server_port
        self.timeout = timeout
        self.stream_timeout = stream_timeout

    @classmethod
    def from_config(cls, config: TransferConfig) -> TftpClient:
        return cls(
            config.host,
            config.port,
            timeout=config.timeout,
            stream_timeout=config.stream_timeout,
        )

    @abstractmethod
    def _connect(self) -> PacketTransport:
        """Open a transport to the server, ready for the request packet."""

    def _start_upload(
        self, transport: PacketTransport, request: WriteRequestPacket
    ) -> None:
        """Wait until the server accepted the write request, if it says so."""

    def _finish_upload(self, transport: PacketTransport) -> None:
        """Confirm the server took the last block, if it says so."""

    def upload(
        self, local_filepath: PathLike, remote_filename: Optional[str] = None
    ) -> TransferResult:
        local_filepath = to_path(local_filepath)
        remote_filename = remote_filename or local_filepath.name
        logger.debug("Uploading %s -> %s", local_filepath, remote_filename)

        try:
            with open_local_file(local_filepath) as source:
                with self._connect() as transport:
                    request = WriteRequestPacket(remote_filename)
                    transport.send(request)
                    self._start_upload(transport, request)
                    transfer = SendTransfer(transport, source, self.timeout).run()
                    self._finish_upload(transport)
        except TftpException as e:
            logger.error("Upload of %s failed: %s", local_filepath, e)
            return TransferResult.failed(e, remote_filename)

        return self._completed(remote_filename, transfer)

    def download(
        self,
        remote_filename: str,
        local_filepath: Optional[PathLike] = None,
        overwrite: bool = True,
    ) -> TransferResult:
        """Fetch ``remote_filename`` into ``local_filepath``.

        An existing local file is only replaced once the whole file arrived;
        with ``overwrite`` False the download refuses to replace it at all.
        """
        try:
            if local_filepath is None:
                local_filepath = sanitize_filename(remote_filename)
            local_filepath = to_path(local_filepath)
            logger.debug("Downloading %s -> %s", remote_filename, local_filepath)

            with PartialFile(local_filepath, overwrite) as sink:
                with self._connect() as transport:
                    transport.send(ReadRequestPacket(remote_filename))
                    transfer = ReceiveTransfer(transport, sink, self.timeout).run()
        except TftpException as e:
            logger.error("Download of %s failed: %s", remote_filename, e)
            return TransferResult.failed(e, remote_filename)

        return self._completed(remote_filename, transfer)

    def _completed(self, filename: str, transfer: Transfer) -> TransferResult:
        result = TransferResult(
            status=TransferStatus.COMPLETED,
            filename=filename,
            blocks=transfer.block_number,
            bytes_transferred=transfer.bytes_transferred,
        )
        logger.info("File transfer completed: %s", result)
        return result


class StreamClient(TftpClient):
    binding = Binding.STREAM

    def _connect(self) -> StreamTransport:
        logger.info("Connecting to %s:%d", self.server_host, self.server_port)
        try:
            sock = socket.create_connection(
                (self.server_host, self.server_port), timeout=self.stream_timeout
            )
        except OSError as e:
            raise TransportError(
                f"Cannot connect to {self.server_host}:{self.server_port}: {e}"
            ) from e

        transport = StreamTransport(sock, timeout=self.stream_timeout)
        try:
            perform_handshake(transport)
        except TftpException:
            transport.close()
            raise
        return transport

    def _finish_upload(self, transport: StreamTransport) -> None:
        # the server closes the stream once it has the file, or reports why not
        try:
            packet = transport.receive()
        except ConnectionClosed:
            return
        if isinstance(packet, ErrorPacket):
            raise RemoteError(packet.error_code, packet.error_message)
        raise ProtocolError(f"Unexpected {packet.packet_type.name} after upload")


class DatagramClient(TftpClient):
    binding = Binding.DATAGRAM

    def _connect(self) -> DatagramTransport:
        try:
            # replies are matched on address, so compare against the resolved one
            server_addr = socket.getaddrinfo(
                self.server_host, self.server_port, socket.AF_INET, socket.SOCK_DGRAM
            )[0][4][:2]
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.bind(("0.0.0.0", 0))
        except OSError as e:
            raise TransportError(
                f"Cannot reach {self.server_host}:{self.server_port}: {e}"
            ) from e

        logger.info("Client TID = %d", sock.getsockname()[1])
        return DatagramTransport(sock, tuple(server_addr), timeout=self.timeout)

    def _start_upload(
        self, transport: PacketTransport, request: WriteRequestPacket
    ) -> None:
        await_ack(transport, request, 0, self.timeout)
