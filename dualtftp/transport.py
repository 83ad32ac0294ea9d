"""Packet transports for the two bindings.

A transport moves whole packets. The stream binding is reliable, so its
transfers skip per-block acknowledgements; the datagram binding is not, so
every DATA block is acknowledged (``PacketTransport.acknowledged``).
"""
from __future__ import annotations

import logging
import socket
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Tuple

from .config import BLOCK_SIZE
from .errors import ConnectionClosed, MalformedPacket, TransferTimeout, TransportError
from .packets import (
    HEADER,
    NUL,
    IPacket,
    PacketType,
    decode_packet,
    read_packet_type,
)

logger = logging.getLogger(__name__)

Address = Tuple[str, int]

RECEIVE_SIZE = 4096

# Longest filename or error message accepted on the stream binding
MAX_STRING_SIZE = 1024

# Largest UDP payload over IPv4
MAX_DATAGRAM_SIZE = 65507


class Binding(Enum):
    STREAM = "stream"
    DATAGRAM = "datagram"


class PacketTransport(ABC):

    binding: Binding
    acknowledged: bool

    @property
    @abstractmethod
    def peer(self) -> Optional[Address]:
        """Address of the remote end, if known."""

    @abstractmethod
    def send(self, packet: IPacket) -> None:
        """Send one packet to the peer."""

    @abstractmethod
    def receive(self, timeout: Optional[float] = None) -> IPacket:
        """Block until the next packet from the peer arrives.

        Raises TransferTimeout when ``timeout`` (seconds) elapses first and
        MalformedPacket when the bytes received do not decode.
        """

    def finish_sending(self) -> None:
        """Called by a sender once its last packet is out."""

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self) -> PacketTransport:
        return self

    def __exit__(self, *_) -> None:
        self.close()


class StreamTransport(PacketTransport):
    """Exchanges packets over a connected stream socket.

    Packets go out exactly as laid out in ``packets``, with nothing around
    them, so the reader finds their end from the opcode: requests and ERROR
    run up to their NUL, ACK is 4 bytes and DATA carries a full block unless
    the peer ends the stream first. A short DATA block is therefore only
    complete once the sender has shut down its side.
    """

    binding = Binding.STREAM
    acknowledged = False

    def __init__(self, sock: socket.socket, timeout: Optional[float] = None) -> None:
        self.sock = sock
        self.timeout = timeout
        self.sock.settimeout(timeout)
        self._pending = bytearray()
        self._peer: Optional[Address] = None
        try:
            peer = sock.getpeername()
        except OSError:
            peer = None
        if isinstance(peer, tuple):
            # unix socket pairs have no address
            self._peer = peer[:2]

    @property
    def peer(self) -> Optional[Address]:
        return self._peer

    def send_raw(self, data: bytes) -> None:
        try:
            self.sock.sendall(data)
        except socket.timeout as e:
            raise TransferTimeout("Timed out writing to stream") from e
        except OSError as e:
            raise TransportError(f"Stream write failed: {e}") from e

    def _fill(self) -> bool:
        """Append whatever the socket has to the pending bytes, False at EOF."""
        try:
            chunk = self.sock.recv(RECEIVE_SIZE)
        except socket.timeout as e:
            raise TransferTimeout("Timed out reading from stream") from e
        except OSError as e:
            raise TransportError(f"Stream read failed: {e}") from e
        self._pending += chunk
        return bool(chunk)

    def _take(self, n_bytes: int) -> bytes:
        data = bytes(self._pending[:n_bytes])
        del self._pending[:n_bytes]
        return data

    def receive_exactly(self, n_bytes: int) -> bytes:
        while len(self._pending) < n_bytes:
            if not self._fill():
                raise ConnectionClosed(
                    f"Peer closed the stream ({len(self._pending)} of "
                    f"{n_bytes} bytes read)"
                )
        return self._take(n_bytes)

    def receive_at_most(self, n_bytes: int) -> bytes:
        """Read ``n_bytes``, or fewer if the peer ends the stream first."""
        while len(self._pending) < n_bytes and self._fill():
            pass
        return self._take(n_bytes)

    def receive_string(self) -> bytes:
        """Read up to and including the next NUL."""
        searched = 0
        while True:
            end = self._pending.find(NUL, searched)
            if end >= 0:
                return self._take(end + 1)
            if len(self._pending) > MAX_STRING_SIZE:
                raise MalformedPacket(
                    f"String is not terminated within {MAX_STRING_SIZE} bytes"
                )
            searched = len(self._pending)
            if not self._fill():
                raise ConnectionClosed("Peer closed the stream inside a string")

    def send(self, packet: IPacket) -> None:
        logger.debug("Sending %s", packet)
        self.send_raw(packet.data())

    def receive(self, timeout: Optional[float] = None) -> IPacket:
        # stream reads are bounded by the socket timeout only
        header = self.receive_exactly(HEADER.size)
        packet_type = read_packet_type(header)

        if packet_type in (PacketType.READ_REQUEST, PacketType.WRITE_REQUEST):
            body = self.receive_string()
        elif packet_type is PacketType.DATA:
            body = self.receive_exactly(2) + self.receive_at_most(BLOCK_SIZE)
        elif packet_type is PacketType.ACKNOWLEDGEMENT:
            body = self.receive_exactly(2)
        else:
            body = self.receive_exactly(2) + self.receive_string()

        packet = decode_packet(header + body)
        logger.debug("Received %s", packet)
        return packet

    def finish_sending(self) -> None:
        # the peer reads EOF, which completes a short final block
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError:
            # already closed by the peer
            pass

    def close(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # already disconnected
            pass
        self.sock.close()


class DatagramTransport(PacketTransport):
    """Exchanges packets with a single peer over a datagram socket.

    Datagrams from any other address are dropped, so a server can keep using
    its well-known socket for the transfer.
    """

    binding = Binding.DATAGRAM
    acknowledged = True

    def __init__(
        self,
        sock: socket.socket,
        peer: Address,
        timeout: Optional[float] = None,
        owns_socket: bool = True,
    ) -> None:
        self.sock = sock
        self._peer = peer
        self.timeout = timeout
        self.owns_socket = owns_socket
        self._initial_timeout = sock.gettimeout()
        self._buffer = bytearray(MAX_DATAGRAM_SIZE)

    @property
    def peer(self) -> Address:
        return self._peer

    def send(self, packet: IPacket) -> None:
        logger.debug("Sending %s to %s:%d", packet, *self._peer)
        try:
            self.sock.sendto(packet.data(), self._peer)
        except OSError as e:
            raise TransportError(f"Datagram send failed: {e}") from e

    def receive(self, timeout: Optional[float] = None) -> IPacket:
        self.sock.settimeout(self.timeout if timeout is None else timeout)
        while True:
            try:
                n_bytes, sender = self.sock.recvfrom_into(self._buffer)
            except socket.timeout as e:
                raise TransferTimeout(
                    f"No datagram from {self._peer[0]}:{self._peer[1]} in time"
                ) from e
            except OSError as e:
                raise TransportError(f"Datagram receive failed: {e}") from e

            if sender[:2] == self._peer:
                break
            logger.debug("Ignoring datagram from stranger %s:%d", *sender[:2])

        packet = decode_packet(self._buffer, n_bytes)
        logger.debug("Received %s", packet)
        return packet

    def close(self) -> None:
        if self.owns_socket:
            self.sock.close()
        else:
            self.sock.settimeout(self._initial_timeout)
