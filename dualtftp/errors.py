from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TransferStatus(Enum):
    COMPLETED = "completed"
    INCOMPLETE_TRANSFER = "incomplete_transfer"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    MALFORMED_PACKET = "malformed_packet"
    NOT_FOUND = "not_found"
    STORAGE_ERROR = "storage_error"
    REMOTE_ERROR = "remote_error"
    TRANSPORT_ERROR = "transport_error"


class TftpException(Exception):
    status: TransferStatus = TransferStatus.PROTOCOL_ERROR


class MalformedPacket(TftpException):
    """Buffer too short, unknown opcode or unterminated string."""

    status = TransferStatus.MALFORMED_PACKET


class ProtocolError(TftpException):
    status = TransferStatus.PROTOCOL_ERROR


class ConnectionClosed(ProtocolError):
    pass


class TransferTimeout(TftpException):
    status = TransferStatus.TIMEOUT


class IncompleteTransfer(TftpException):
    status = TransferStatus.INCOMPLETE_TRANSFER


class StorageError(TftpException):
    status = TransferStatus.STORAGE_ERROR


class NotFound(StorageError):
    status = TransferStatus.NOT_FOUND


class RemoteError(TftpException):
    """The peer sent an ERROR packet."""

    status = TransferStatus.REMOTE_ERROR

    def __init__(self, error_code: int, error_message: str) -> None:
        super().__init__(f"[{error_code}] {error_message}")
        self.error_code = error_code
        self.error_message = error_message


class TransportError(TftpException):
    status = TransferStatus.TRANSPORT_ERROR


@dataclass(frozen=True)
class TransferResult:
    """Outcome of one session, handed back to the caller for rendering."""

    status: TransferStatus
    filename: Optional[str] = None
    blocks: int = 0
    bytes_transferred: int = 0
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is TransferStatus.COMPLETED

    @classmethod
    def failed(
        cls, exc: TftpException, filename: Optional[str] = None
    ) -> TransferResult:
        return cls(status=exc.status, filename=filename, message=str(exc))

    def __str__(self) -> str:
        description = f"{self.status.name} {self.filename or ''}".rstrip()
        if self.ok:
            return f"{description} ({self.blocks} blocks, {self.bytes_transferred} bytes)"
        return f"{description}: {self.message}"
