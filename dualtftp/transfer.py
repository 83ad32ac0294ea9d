"""Block-sequenced transfer state machine, shared by clients and servers.

A transfer goes AWAITING_TRANSFER -> SENDING | RECEIVING -> COMPLETED | FAILED.
The sender numbers 512 byte blocks from 1 and the receiver stops at the first
short block, so a source whose size is a multiple of 512 (or empty) ends with
an extra zero length block.

On a binding that acknowledges blocks (datagram) the sender waits for the ACK
of each block before reading the next one. An ACK for a different block makes
the sender retransmit and keep waiting; running out of time is fatal.
"""
from __future__ import annotations

import io
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import BinaryIO, Iterator, Optional

from .config import BLOCK_SIZE
from .errors import (
    ConnectionClosed,
    IncompleteTransfer,
    MalformedPacket,
    ProtocolError,
    RemoteError,
    StorageError,
    TransferTimeout,
)
from .packets import MAX_BLOCK_NUMBER, AckPacket, DataPacket, ErrorPacket, IPacket
from .transport import PacketTransport

logger = logging.getLogger(__name__)


class TransferState(Enum):
    AWAITING_TRANSFER = "awaiting transfer"
    SENDING = "sending"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    FAILED = "failed"


def iter_blocks(source: BinaryIO, block_size: int = BLOCK_SIZE) -> Iterator[bytes]:
    """Yield successive chunks of ``source``, ending with the first short one
    (possibly empty)."""
    while True:
        try:
            chunk = source.read(block_size)
        except OSError as e:
            raise StorageError(f"Error reading from file: {e}") from e
        yield chunk
        if len(chunk) < block_size:
            return


def is_consistent(n_blocks: int, n_bytes: int, block_size: int = BLOCK_SIZE) -> bool:
    """Every block but the last one is full and the last one is short."""
    if n_blocks < 1:
        return False
    return (n_blocks - 1) * block_size <= n_bytes < n_blocks * block_size


def await_ack(
    transport: PacketTransport,
    packet: IPacket,
    block_number: int,
    timeout: Optional[float],
) -> AckPacket:
    """Wait for the ACK of ``block_number``, resending ``packet`` whenever an
    ACK for another block shows up.

    Raises TransferTimeout once ``timeout`` seconds have passed since the call,
    however many retransmissions happened in between.
    """
    deadline = None if timeout is None else time.monotonic() + timeout

    while True:
        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransferTimeout(f"Timeout waiting for ACK for block {block_number}")

        try:
            response = transport.receive(timeout=remaining)
        except TransferTimeout:
            raise TransferTimeout(
                f"Timeout waiting for ACK for block {block_number}"
            ) from None
        except MalformedPacket as e:
            logger.warning("Ignoring malformed packet: %s", e)
            continue

        if isinstance(response, ErrorPacket):
            raise RemoteError(response.error_code, response.error_message)
        if not isinstance(response, AckPacket):
            logger.warning(
                "Expected ACK, received %s", response.packet_type.name
            )
            continue
        if response.block_number == block_number:
            return response

        logger.warning(
            "Received ACK with incorrect block number. Expected %d, but received "
            "%d; retransmitting",
            block_number,
            response.block_number,
        )
        transport.send(packet)


class Transfer(ABC):
    def __init__(
        self,
        transport: PacketTransport,
        timeout: Optional[float] = None,
        block_size: int = BLOCK_SIZE,
    ) -> None:
        self.transport = transport
        self.timeout = timeout
        self.block_size = block_size
        self.state = TransferState.AWAITING_TRANSFER
        self.block_number = 0
        self.bytes_transferred = 0

    def __str__(self) -> str:
        return (
            f"<{self.__class__.__name__} ({self.state.value}, "
            f"block {self.block_number:d})>"
        )

    def _transition(self, state: TransferState) -> None:
        logger.debug("State transition: %s -> %s", self.state.name, state.name)
        self.state = state

    def run(self) -> Transfer:
        if self.state is not TransferState.AWAITING_TRANSFER:
            raise ProtocolError(f"{self} has already run")
        try:
            self._run()
        except BaseException:
            self._transition(TransferState.FAILED)
            raise
        self._transition(TransferState.COMPLETED)
        return self

    @abstractmethod
    def _run(self) -> None:
        """Move the file, leaving the state at SENDING or RECEIVING."""


class SendTransfer(Transfer):
    def __init__(
        self,
        transport: PacketTransport,
        source: BinaryIO,
        timeout: Optional[float] = None,
        block_size: int = BLOCK_SIZE,
    ) -> None:
        super().__init__(transport, timeout, block_size)
        self.source = source

    def _run(self) -> None:
        self._transition(TransferState.SENDING)

        for chunk in iter_blocks(self.source, self.block_size):
            if self.block_number >= MAX_BLOCK_NUMBER:
                raise ProtocolError(
                    f"File too large, more than {MAX_BLOCK_NUMBER} blocks"
                )
            self.block_number += 1
            packet = DataPacket(self.block_number, chunk)
            self.transport.send(packet)

            if self.transport.acknowledged:
                await_ack(self.transport, packet, self.block_number, self.timeout)

            self.bytes_transferred += len(chunk)

        self.transport.finish_sending()
        logger.info(
            "Sent %d bytes in %d blocks", self.bytes_transferred, self.block_number
        )


class ReceiveTransfer(Transfer):
    """Collects the blocks in memory and only hands them to ``sink`` once the
    transfer ended and its size checks out."""

    def __init__(
        self,
        transport: PacketTransport,
        sink: BinaryIO,
        timeout: Optional[float] = None,
        block_size: int = BLOCK_SIZE,
    ) -> None:
        super().__init__(transport, timeout, block_size)
        self.sink = sink

    def _next_packet(self) -> IPacket:
        try:
            return self.transport.receive(timeout=self.timeout)
        except ConnectionClosed as e:
            raise IncompleteTransfer(
                f"Connection closed after block {self.block_number}"
            ) from e
        except TransferTimeout:
            raise TransferTimeout(
                f"Timeout waiting for data packet for block {self.block_number + 1}"
            ) from None

    def _run(self) -> None:
        self._transition(TransferState.RECEIVING)
        buffer = io.BytesIO()

        while True:
            try:
                packet = self._next_packet()
            except MalformedPacket as e:
                logger.warning("Ignoring malformed packet: %s", e)
                continue

            if isinstance(packet, ErrorPacket):
                raise RemoteError(packet.error_code, packet.error_message)
            if not isinstance(packet, DataPacket):
                logger.warning("Expected DATA, received %s", packet.packet_type.name)
                continue

            expected = self.block_number + 1
            if packet.block_number != expected:
                logger.warning(
                    "Received data packet with incorrect block number. "
                    "Expected %d, but received %d",
                    expected,
                    packet.block_number,
                )
                continue

            buffer.write(packet.raw_data)
            self.block_number = expected
            if self.transport.acknowledged:
                self.transport.send(AckPacket(self.block_number))

            if packet.end_of_data:
                break

        received = buffer.getvalue()
        if not is_consistent(self.block_number, len(received), self.block_size):
            raise IncompleteTransfer(
                f"Incomplete data received: {len(received)} bytes "
                f"in {self.block_number} blocks"
            )

        try:
            self.sink.write(received)
            self.sink.flush()
        except OSError as e:
            raise StorageError(f"Error writing to file: {e}") from e

        self.bytes_transferred = len(received)
        logger.info(
            "Received %d bytes in %d blocks", self.bytes_transferred, self.block_number
        )
