"""Packet codec for the five packet kinds.

Every packet starts with a zero byte followed by the opcode, all integers are
network order (big-endian):

    RRQ/WRQ | 0 | 1/2 | filename | 0 |
    DATA    | 0 |  3  | block #  | 0-512 bytes payload |
    ACK     | 0 |  4  | block #  |
    ERROR   | 0 |  5  |   0 5    | message | 0 |

Packets are decoded once, at the transport boundary, into one of the classes
below; nothing past this module looks at raw offsets.
"""
from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Optional, Type, Union

from .config import BLOCK_SIZE
from .errors import MalformedPacket

NUL = b"\x00"

HEADER = struct.Struct("!BB")
BLOCK_HEADER = struct.Struct("!BBH")
HEADER_SIZE = BLOCK_HEADER.size

MAX_BLOCK_NUMBER = 0xFFFF

# The only error code this protocol defines
ERROR_CODE = 5

TEXT_ENCODING = "utf-8"

Buffer = Union[bytes, bytearray, memoryview]


class PacketType(Enum):
    READ_REQUEST = 1
    WRITE_REQUEST = 2
    DATA = 3
    ACKNOWLEDGEMENT = 4
    ERROR = 5

    @property
    def implementation(self) -> Optional[Type[IPacket]]:
        return _IPACKET_REGISTRY.get(self.value)


_IPACKET_REGISTRY: Dict[int, Type[IPacket]] = {}


class IPacket(ABC):

    packet_type: PacketType

    def __init_subclass__(cls, **kwargs) -> None:
        super().__init_subclass__(**kwargs)
        if cls.packet_type.value in _IPACKET_REGISTRY:
            raise ValueError(
                f"Implementation for PacketType {cls.packet_type} already exists"
            )
        _IPACKET_REGISTRY[cls.packet_type.value] = cls

    def __str__(self) -> str:
        description = " | ".join(
            f"{k}={_describe(v)}" for k, v in self.__dict__.items()
        )
        return f"<{self.__class__.__name__} {description}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IPacket):
            return NotImplemented
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __hash__(self) -> int:
        return hash((type(self), tuple(self.__dict__.values())))

    @abstractmethod
    def data(self) -> bytes:
        """Serialize the instance to bytes matching the packet format."""

    @classmethod
    @abstractmethod
    def from_data(cls, data: bytes) -> IPacket:
        """Deserialize the instance from bytes.

        Raises MalformedPacket if the data does not hold a complete packet.
        """


def _describe(value: object) -> str:
    if isinstance(value, (bytes, bytearray)):
        return f"{len(value)} bytes"
    return str(value)


def _check_block_number(block_number: int) -> None:
    if not 0 <= block_number <= MAX_BLOCK_NUMBER:
        raise ValueError(f"block_number must be in 0..{MAX_BLOCK_NUMBER}")


def _read_string(data: bytes, start: int) -> str:
    end = data.find(NUL, start)
    if end < 0:
        raise MalformedPacket("String is not terminated with a null byte")
    return data[start:end].decode(TEXT_ENCODING, errors="replace")


def _require_length(data: bytes, packet_type: PacketType) -> None:
    if len(data) < HEADER_SIZE:
        raise MalformedPacket(
            f"{packet_type.name} packet too small ({len(data)} bytes, "
            f"need at least {HEADER_SIZE})"
        )


class ReadRequestPacket(IPacket):
    """
     2 bytes    string    1 byte
     ------------------------------
    | 01/02 |  Filename  |   0  |
     ------------------------------
    """

    packet_type: PacketType = PacketType.READ_REQUEST

    def __init__(self, filename: str) -> None:
        self.filename = filename

    @classmethod
    def from_data(cls, data: bytes) -> ReadRequestPacket:
        _require_length(data, cls.packet_type)
        return cls(_read_string(data, HEADER.size))

    def data(self) -> bytes:
        return (
            HEADER.pack(0, self.packet_type.value)
            + self.filename.encode(TEXT_ENCODING)
            + NUL
        )


class WriteRequestPacket(ReadRequestPacket):
    packet_type: PacketType = PacketType.WRITE_REQUEST


class DataPacket(IPacket):
    """
     2 bytes     2 bytes      n bytes
     ----------------------------------
    | Opcode |   Block #  |   Data     |
     ----------------------------------
    """

    packet_type: PacketType = PacketType.DATA
    max_block_size = BLOCK_SIZE

    def __init__(self, block_number: int, data: bytes) -> None:
        _check_block_number(block_number)
        if len(data) > self.max_block_size:
            raise ValueError(f"data must be at most {self.max_block_size} bytes")

        self.block_number = block_number
        self.raw_data = bytes(data)

    @property
    def end_of_data(self) -> bool:
        return len(self.raw_data) < self.max_block_size

    def data(self) -> bytes:
        return BLOCK_HEADER.pack(0, self.packet_type.value, self.block_number) + (
            self.raw_data
        )

    @classmethod
    def from_data(cls, data: bytes) -> DataPacket:
        _require_length(data, cls.packet_type)
        _, _, block_number = BLOCK_HEADER.unpack_from(data)
        payload = data[HEADER_SIZE:]
        if len(payload) > cls.max_block_size:
            raise MalformedPacket(
                f"DATA payload of {len(payload)} bytes exceeds {cls.max_block_size}"
            )
        return cls(block_number, payload)


class AckPacket(IPacket):
    """
      2 bytes     2 bytes
     ---------------------
    | Opcode |   Block #  |
     ---------------------

    Block 0 acknowledges a write request.
    """

    packet_type: PacketType = PacketType.ACKNOWLEDGEMENT

    def __init__(self, block_number: int) -> None:
        _check_block_number(block_number)
        self.block_number = block_number

    @classmethod
    def from_data(cls, data: bytes) -> AckPacket:
        _require_length(data, cls.packet_type)
        _, _, block_number = BLOCK_HEADER.unpack_from(data)
        return cls(block_number)

    def data(self) -> bytes:
        return BLOCK_HEADER.pack(0, self.packet_type.value, self.block_number)


class ErrorPacket(IPacket):
    """
     2 bytes     2 bytes      string    1 byte
     -----------------------------------------
    | Opcode |  ErrorCode |   ErrMsg   |   0  |
     -----------------------------------------
    """

    packet_type: PacketType = PacketType.ERROR

    def __init__(self, error_message: str, error_code: int = ERROR_CODE) -> None:
        self.error_code = error_code
        self.error_message = error_message

    def data(self) -> bytes:
        return (
            BLOCK_HEADER.pack(0, self.packet_type.value, self.error_code)
            + self.error_message.encode(TEXT_ENCODING)
            + NUL
        )

    @classmethod
    def from_data(cls, data: bytes) -> ErrorPacket:
        _require_length(data, cls.packet_type)
        _, _, error_code = BLOCK_HEADER.unpack_from(data)
        return cls(_read_string(data, HEADER_SIZE), error_code=error_code)


def read_packet_type(data: Buffer) -> PacketType:
    """Packet type from the opcode at the start of ``data``."""
    if len(data) < HEADER.size:
        raise MalformedPacket(f"Packet too small ({len(data)} bytes)")

    high, opcode = HEADER.unpack_from(data)
    try:
        packet_type = PacketType(opcode)
    except ValueError:
        raise MalformedPacket(f"Unknown opcode {opcode}") from None
    if high != 0:
        raise MalformedPacket(f"Unknown opcode {high << 8 | opcode}")
    return packet_type


def decode_packet(buffer: Buffer, length: Optional[int] = None) -> IPacket:
    """Decode the first ``length`` bytes of ``buffer`` (all of it by default)."""
    data = bytes(buffer if length is None else buffer[:length])
    packet_type = read_packet_type(data)

    packet_class = packet_type.implementation
    if packet_class is None:
        raise MalformedPacket(f"No implementation found for {packet_type}")

    return packet_class.from_data(data)


def encode_request(packet_type: PacketType, filename: str) -> bytes:
    if packet_type is PacketType.READ_REQUEST:
        return ReadRequestPacket(filename).data()
    elif packet_type is PacketType.WRITE_REQUEST:
        return WriteRequestPacket(filename).data()
    raise ValueError(f"{packet_type.name} is not a request")


def encode_data(block_number: int, payload: bytes) -> bytes:
    return DataPacket(block_number, payload).data()


def encode_ack(block_number: int) -> bytes:
    return AckPacket(block_number).data()


def encode_error(message: str) -> bytes:
    return ErrorPacket(message).data()
