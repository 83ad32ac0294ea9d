from __future__ import annotations

import io
import random
import socket
import threading
from queue import Queue
from typing import List, Optional, Sequence, Union

import pytest

from dualtftp import transfer
from dualtftp.errors import (
    ConnectionClosed,
    IncompleteTransfer,
    MalformedPacket,
    ProtocolError,
    RemoteError,
    TransferTimeout,
)
from dualtftp.packets import AckPacket, DataPacket, ErrorPacket, IPacket
from dualtftp.transport import (
    Binding,
    DatagramTransport,
    PacketTransport,
    StreamTransport,
)

Response = Union[IPacket, Exception]


class ScriptedTransport(PacketTransport):
    """Records what is sent and replays canned responses on receive."""

    binding = Binding.DATAGRAM

    def __init__(self, responses: Sequence[Response], acknowledged: bool = True) -> None:
        self.acknowledged = acknowledged
        self.responses: List[Response] = list(responses)
        self.sent: List[IPacket] = []
        self.closed = False

    @property
    def peer(self):
        return ("127.0.0.1", 50000)

    def send(self, packet: IPacket) -> None:
        self.sent.append(packet)

    def receive(self, timeout: Optional[float] = None) -> IPacket:
        if not self.responses:
            raise TransferTimeout("nothing left to receive")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        self.closed = True


class CountingTransport(ScriptedTransport):
    def __init__(self) -> None:
        super().__init__([], acknowledged=False)
        self.n_sent = 0

    def send(self, packet: IPacket) -> None:
        self.n_sent += 1


class EndlessSource:
    def read(self, n_bytes: int) -> bytes:
        return b"x" * n_bytes


def _blocks(data: bytes) -> List[DataPacket]:
    """What a correct sender puts on the wire for ``data``."""
    chunks = list(transfer.iter_blocks(io.BytesIO(data)))
    return [DataPacket(i, chunk) for i, chunk in enumerate(chunks, start=1)]


class TestIterBlocks:
    @pytest.mark.parametrize("k, r", ((0, 1), (1, 88), (3, 511)))
    def test_partial_last_block(self, k: int, r: int) -> None:
        chunks = list(transfer.iter_blocks(io.BytesIO(b"a" * (512 * k + r))))
        assert len(chunks) == k + 1
        assert [len(c) for c in chunks[:-1]] == [512] * k
        assert len(chunks[-1]) == r

    @pytest.mark.parametrize("k", (1, 2, 8))
    def test_exact_multiple__ends_with_empty_block(self, k: int) -> None:
        chunks = list(transfer.iter_blocks(io.BytesIO(b"a" * (512 * k))))
        assert len(chunks) == k + 1
        assert chunks[-1] == b""

    def test_empty_source__single_empty_block(self) -> None:
        assert list(transfer.iter_blocks(io.BytesIO(b""))) == [b""]


class TestIsConsistent:
    @pytest.mark.parametrize(
        "n_blocks, n_bytes, expected",
        (
            (1, 0, True),
            (1, 511, True),
            (2, 512, True),
            (2, 600, True),
            (3, 1024, True),
            (2, 100, False),
            (1, 512, False),
            (0, 0, False),
        ),
    )
    def test(self, n_blocks: int, n_bytes: int, expected: bool) -> None:
        assert transfer.is_consistent(n_blocks, n_bytes) is expected


class TestSendTransfer:
    def test_stream__no_acks_awaited(self) -> None:
        data = b"r" * 600
        transport = ScriptedTransport([], acknowledged=False)
        instance = transfer.SendTransfer(transport, io.BytesIO(data)).run()

        assert transport.sent == [DataPacket(1, data[:512]), DataPacket(2, data[512:])]
        assert instance.state is transfer.TransferState.COMPLETED
        assert instance.block_number == 2
        assert instance.bytes_transferred == 600

    def test_exact_multiple__sends_trailing_empty_block(self) -> None:
        transport = ScriptedTransport([], acknowledged=False)
        transfer.SendTransfer(transport, io.BytesIO(b"m" * 1024)).run()
        assert [len(p.raw_data) for p in transport.sent] == [512, 512, 0]

    def test_datagram__waits_for_each_ack(self) -> None:
        transport = ScriptedTransport([AckPacket(1), AckPacket(2)])
        transfer.SendTransfer(transport, io.BytesIO(b"r" * 600), timeout=1).run()
        assert [p.block_number for p in transport.sent] == [1, 2]

    def test_datagram__no_ack__times_out_without_further_sends(self) -> None:
        transport = ScriptedTransport([])
        instance = transfer.SendTransfer(transport, io.BytesIO(b"r" * 2000), timeout=1)

        with pytest.raises(TransferTimeout, match=r".*block 1.*"):
            instance.run()

        assert transport.sent == [DataPacket(1, b"r" * 512)]
        assert instance.state is transfer.TransferState.FAILED

    def test_datagram__mismatched_ack__retransmits(self) -> None:
        transport = ScriptedTransport([AckPacket(0), AckPacket(7), AckPacket(1)])
        transfer.SendTransfer(transport, io.BytesIO(b"short"), timeout=1).run()
        assert transport.sent == [DataPacket(1, b"short")] * 3

    def test_datagram__malformed_and_unexpected_packets_are_skipped(self) -> None:
        transport = ScriptedTransport(
            [MalformedPacket("garbage"), DataPacket(1, b""), AckPacket(1)]
        )
        transfer.SendTransfer(transport, io.BytesIO(b"short"), timeout=1).run()
        assert transport.sent == [DataPacket(1, b"short")]

    def test_datagram__error_packet__raises(self) -> None:
        transport = ScriptedTransport([ErrorPacket("Disk full")])
        with pytest.raises(RemoteError, match=r".*Disk full.*"):
            transfer.SendTransfer(transport, io.BytesIO(b"short"), timeout=1).run()

    def test_block_number_never_wraps(self) -> None:
        transport = CountingTransport()
        instance = transfer.SendTransfer(transport, EndlessSource())
        with pytest.raises(ProtocolError, match=r".*too large.*"):
            instance.run()
        assert transport.n_sent == 65535

    def test_cannot_run_twice(self) -> None:
        instance = transfer.SendTransfer(
            ScriptedTransport([], acknowledged=False), io.BytesIO(b"")
        )
        instance.run()
        with pytest.raises(ProtocolError):
            instance.run()


class TestReceiveTransfer:
    def test_stream__reassembles_and_skips_mismatched_blocks(self) -> None:
        data = bytes(range(256)) * 2 + b"z" * 88
        responses = _blocks(data)
        responses.insert(1, DataPacket(5, b"out of order"))
        transport = ScriptedTransport(responses, acknowledged=False)
        sink = io.BytesIO()

        instance = transfer.ReceiveTransfer(transport, sink).run()

        assert sink.getvalue() == data
        assert transport.sent == []
        assert instance.block_number == 2
        assert instance.bytes_transferred == 600

    def test_datagram__acknowledges_each_block(self) -> None:
        transport = ScriptedTransport(_blocks(b"d" * 1024))
        sink = io.BytesIO()
        transfer.ReceiveTransfer(transport, sink, timeout=1).run()

        assert transport.sent == [AckPacket(1), AckPacket(2), AckPacket(3)]
        assert sink.getvalue() == b"d" * 1024

    def test_duplicate_block_is_not_reacknowledged(self) -> None:
        blocks = _blocks(b"d" * 700)
        transport = ScriptedTransport([blocks[0], blocks[0], blocks[1]])
        transfer.ReceiveTransfer(transport, io.BytesIO(), timeout=1).run()
        assert transport.sent == [AckPacket(1), AckPacket(2)]

    def test_connection_closed__incomplete_and_nothing_written(self) -> None:
        blocks = _blocks(b"d" * 1500)
        transport = ScriptedTransport(
            [blocks[0], ConnectionClosed("eof")], acknowledged=False
        )
        sink = io.BytesIO()
        instance = transfer.ReceiveTransfer(transport, sink)

        with pytest.raises(IncompleteTransfer):
            instance.run()

        assert sink.getvalue() == b""
        assert instance.state is transfer.TransferState.FAILED

    def test_timeout__raises(self) -> None:
        transport = ScriptedTransport([])
        with pytest.raises(TransferTimeout, match=r".*block 1.*"):
            transfer.ReceiveTransfer(transport, io.BytesIO(), timeout=1).run()

    def test_error_packet__raises(self) -> None:
        transport = ScriptedTransport([ErrorPacket("File not found: x")])
        with pytest.raises(RemoteError) as exc_info:
            transfer.ReceiveTransfer(transport, io.BytesIO(), timeout=1).run()
        assert exc_info.value.error_message == "File not found: x"


class TestAwaitAck:
    def test_matching_ack_returned(self) -> None:
        transport = ScriptedTransport([AckPacket(0)])
        ack = transfer.await_ack(transport, DataPacket(1, b""), 0, timeout=1)
        assert ack.block_number == 0
        assert transport.sent == []


class TestOverSockets:
    def test_datagram_sender_without_ack__stops_after_first_block(self) -> None:
        silent_peer = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        silent_peer.bind(("127.0.0.1", 0))
        silent_peer.settimeout(0.5)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind(("127.0.0.1", 0))

        with DatagramTransport(sock, silent_peer.getsockname(), timeout=0.2) as t:
            with pytest.raises(TransferTimeout):
                transfer.SendTransfer(t, io.BytesIO(b"x" * 5000), timeout=0.2).run()

        first, _ = silent_peer.recvfrom(1024)
        assert first[:4] == b"\x00\x03\x00\x01"
        with pytest.raises(socket.timeout):
            silent_peer.recvfrom(1024)
        silent_peer.close()

    def test_stream_multi_megabyte_transfer_is_byte_identical(self) -> None:
        data = random.Random(1350).randbytes(3 * 1024 * 1024 + 123)
        left, right = socket.socketpair()
        errors: Queue = Queue()

        def sender() -> None:
            try:
                transfer.SendTransfer(StreamTransport(left), io.BytesIO(data)).run()
            except Exception as e:  # surfaced through the queue
                errors.put(e)

        sender_thread = threading.Thread(target=sender, name="Thread-Sender")
        sender_thread.daemon = True
        sender_thread.start()

        sink = io.BytesIO()
        instance = transfer.ReceiveTransfer(StreamTransport(right), sink).run()
        sender_thread.join()

        assert errors.empty()
        assert sink.getvalue() == data
        assert instance.block_number == len(data) // 512 + 1
        left.close()
        right.close()
