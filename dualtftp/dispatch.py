from __future__ import annotations

import logging
from typing import Optional, Union

from .config import DEFAULT_TIMEOUT
from .errors import (
    MalformedPacket,
    ProtocolError,
    StorageError,
    TftpException,
    TransferResult,
    TransferStatus,
)
from .handshake import perform_handshake
from .logging import SessionLoggerAdapter
from .packets import (
    AckPacket,
    ErrorPacket,
    IPacket,
    PacketType,
    ReadRequestPacket,
    decode_packet,
)
from .storage import FileStorage
from .transfer import ReceiveTransfer, SendTransfer, Transfer
from .transport import Binding, PacketTransport

logger = logging.getLogger(__name__)

Request = Union[bytes, bytearray, IPacket, None]


class RequestDispatcher:
    """Serves the request that opens a session: RRQ sends a file out of
    ``storage``, WRQ receives one into it. Anything else is answered with an
    ERROR packet and ends the session.
    """

    def __init__(
        self, storage: FileStorage, timeout: Optional[float] = DEFAULT_TIMEOUT
    ) -> None:
        self.storage = storage
        self.timeout = timeout

    def dispatch(
        self, transport: PacketTransport, request: Request = None
    ) -> TransferResult:
        """Serve one request to completion.

        ``request`` is the first packet of the session, either already
        received (raw or decoded) or, when None, read from ``transport``.
        Failures are reported in the returned result.
        """
        log = SessionLoggerAdapter(logger, transport.peer)
        filename = None
        try:
            packet = self._read_request(transport, request, log)
            filename = packet.filename
            log.info("Received %s for %s", packet.packet_type.name, filename)

            if packet.packet_type is PacketType.READ_REQUEST:
                transfer = self._serve_read(transport, filename, log)
            else:
                transfer = self._serve_write(transport, filename, log)
        except TftpException as e:
            log.error("Transfer of %s failed: %s", filename or "<no request>", e)
            return TransferResult.failed(e, filename)

        log.info("Transfer of %s completed", filename)
        return TransferResult(
            status=TransferStatus.COMPLETED,
            filename=filename,
            blocks=transfer.block_number,
            bytes_transferred=transfer.bytes_transferred,
        )

    def _read_request(
        self,
        transport: PacketTransport,
        request: Request,
        log: logging.LoggerAdapter,
    ) -> ReadRequestPacket:
        try:
            if request is None:
                packet = transport.receive()
            elif isinstance(request, IPacket):
                packet = request
            else:
                packet = decode_packet(request)
        except MalformedPacket as e:
            self._reply_error(transport, f"Illegal TFTP operation: {e}", log)
            raise ProtocolError(f"Malformed request: {e}") from e

        # WriteRequestPacket is a ReadRequestPacket too
        if not isinstance(packet, ReadRequestPacket):
            message = (
                "Illegal TFTP operation: expected RRQ or WRQ, "
                f"received {packet.packet_type.name}"
            )
            self._reply_error(transport, message, log)
            raise ProtocolError(message)
        return packet

    def _serve_read(
        self, transport: PacketTransport, filename: str, log: logging.LoggerAdapter
    ) -> Transfer:
        try:
            source = self.storage.open_for_read(filename)
        except StorageError as e:
            self._reply_error(transport, str(e), log)
            raise

        with source:
            transfer = SendTransfer(transport, source, self.timeout)
            try:
                transfer.run()
            except StorageError as e:
                self._reply_error(transport, str(e), log)
                raise
        return transfer

    def _serve_write(
        self, transport: PacketTransport, filename: str, log: logging.LoggerAdapter
    ) -> Transfer:
        try:
            sink = self.storage.open_for_write(filename)
        except StorageError as e:
            self._reply_error(transport, str(e), log)
            raise

        try:
            with sink:
                if transport.acknowledged:
                    # ready for block 1
                    transport.send(AckPacket(0))
                transfer = ReceiveTransfer(transport, sink, self.timeout).run()
        except StorageError as e:
            self._reply_error(transport, str(e), log)
            self.storage.discard(filename)
            raise
        except TftpException:
            self.storage.discard(filename)
            raise
        return transfer

    @staticmethod
    def _reply_error(
        transport: PacketTransport, message: str, log: logging.LoggerAdapter
    ) -> None:
        log.debug("Replying with ERROR: %s", message)
        try:
            transport.send(ErrorPacket(message))
        except TftpException as e:
            log.warning("Could not send ERROR packet: %s", e)


def run_session(
    transport: PacketTransport,
    dispatcher: RequestDispatcher,
    request: Request = None,
    handshake: Optional[bool] = None,
) -> TransferResult:
    """Run one session on ``transport`` to completion and close it.

    ``handshake`` defaults to what the binding needs: stream sessions start
    with the token exchange, datagram sessions start with ``request``, the
    datagram received at the server port.
    """
    if handshake is None:
        handshake = transport.binding is Binding.STREAM

    log = SessionLoggerAdapter(logger, transport.peer)
    log.info("Session started (%s binding)", transport.binding.value)
    try:
        if handshake:
            perform_handshake(transport)

        result = dispatcher.dispatch(transport, request)
    except TftpException as e:
        log.error("Session aborted: %s", e)
        result = TransferResult.failed(e)
    finally:
        transport.close()

    log.info("Session finished: %s", result)
    return result
