import logging
import random
import struct
import unittest

from framedsock.errors import ConnectionClosedError
from framedsock.stream.framing import (
    HEADER_FORMAT,
    HEADER_SIZE,
    MAX_MSG_SIZE,
    FrameReceiver,
    ReceiveStates,
    encode_header,
    frame,
)


def deliver(receiver: FrameReceiver, stream: bytes, chunk_sizes=()):
    """ Feed a byte stream to a receiver one read at a time.

    Each read returns at most the requested number of bytes. When chunk sizes
    are supplied a read is further limited to the next chunk size, emulating
    a network that delivers the stream in pieces.
    """
    messages = []
    sizes = list(chunk_sizes)
    offset = 0
    while offset < len(stream):
        limit = receiver.read_size
        if sizes:
            limit = min(limit, sizes.pop(0))
        msg = receiver.feed(stream[offset : offset + limit])
        offset += limit
        if msg is not None:
            messages.append(msg)
    return messages


class FramingTestCase(unittest.TestCase):
    def test_header_is_little_endian_uint32(self):
        self.assertEqual(HEADER_SIZE, 4)
        self.assertEqual(encode_header(5), b"\x05\x00\x00\x00")
        self.assertEqual(frame(b"hello"), b"\x05\x00\x00\x00hello")
        self.assertEqual(frame(b""), b"\x00\x00\x00\x00")

    def test_header_out_of_range(self):
        with self.assertRaises(ValueError):
            encode_header(-1)
        with self.assertRaises(ValueError):
            encode_header(MAX_MSG_SIZE + 1)
        self.assertEqual(encode_header(MAX_MSG_SIZE), b"\xff\xff\xff\xff")

    def test_invalid_buffer_size(self):
        with self.assertRaises(ValueError):
            FrameReceiver(buffer_size=HEADER_SIZE - 1)


class FrameReceiverTestCase(unittest.TestCase):
    def test_initial_state(self):
        r = FrameReceiver()
        self.assertEqual(r.state, ReceiveStates.AWAIT_HEADER)
        self.assertEqual(r.read_size, HEADER_SIZE)
        self.assertFalse(r.header_fragmented)

    def test_round_trip(self):
        """ check framed payloads are reconstructed byte for byte """
        payloads = [b"", b"a", b"hello", bytes(range(256)) * 100]
        for payload in payloads:
            with self.subTest(len=len(payload)):
                r = FrameReceiver()
                self.assertEqual(deliver(r, frame(payload)), [payload])
                self.assertEqual(r.state, ReceiveStates.AWAIT_HEADER)
                self.assertEqual(r.read_size, HEADER_SIZE)

    def test_hello_delivered_in_pieces(self):
        """ check header then payload split over two deliveries yields one message """
        r = FrameReceiver()
        self.assertIsNone(r.feed(b"\x05\x00\x00\x00"))
        self.assertEqual(r.state, ReceiveStates.AWAIT_PAYLOAD)
        self.assertEqual(r.read_size, 5)
        self.assertIsNone(r.feed(b"he"))
        self.assertEqual(r.remaining, 3)
        self.assertEqual(r.feed(b"llo"), b"hello")
        self.assertEqual(r.state, ReceiveStates.AWAIT_HEADER)

    def test_header_split_at_every_offset(self):
        """ check a header broken at any byte offset is reassembled """
        payload = b"Hello World"
        stream = frame(payload) + frame(b"second")
        for split in range(1, HEADER_SIZE):
            with self.subTest(split=split):
                r = FrameReceiver()
                self.assertIsNone(r.feed(stream[:split]))
                self.assertTrue(r.header_fragmented)
                self.assertEqual(r.read_size, HEADER_SIZE - split)
                messages = deliver(r, stream[split:])
                self.assertEqual(messages, [payload, b"second"])
                self.assertFalse(r.header_fragmented)

    def test_message_received_in_worst_case_delivery_scenario(self):
        """ check one byte per read produces exactly one message """
        r = FrameReceiver()
        stream = frame(b"Hello World")
        messages = deliver(r, stream, chunk_sizes=[1] * len(stream))
        self.assertEqual(messages, [b"Hello World"])

    def test_arbitrary_chunking(self):
        rng = random.Random(1234)
        payloads = [bytes(rng.getrandbits(8) for _ in range(n)) for n in (0, 3, 17, 9000)]
        stream = b"".join(frame(p) for p in payloads)
        for _ in range(20):
            sizes = [rng.randint(1, 64) for _ in range(len(stream))]
            r = FrameReceiver(buffer_size=32)
            self.assertEqual(deliver(r, stream, sizes), payloads)

    def test_reads_are_limited_to_buffer_size(self):
        r = FrameReceiver(buffer_size=8)
        r.feed(encode_header(20))
        self.assertEqual(r.read_size, 8)
        r.feed(b"x" * 8)
        self.assertEqual(r.read_size, 8)
        r.feed(b"x" * 8)
        self.assertEqual(r.read_size, 4)
        self.assertEqual(r.feed(b"x" * 4), b"x" * 20)

    def test_zero_length_message(self):
        r = FrameReceiver()
        self.assertEqual(r.feed(struct.pack(HEADER_FORMAT, 0)), b"")
        self.assertEqual(r.state, ReceiveStates.AWAIT_HEADER)

    def test_oversized_read_is_rejected(self):
        r = FrameReceiver()
        with self.assertRaises(ValueError):
            r.feed(frame(b"hello"))

    def test_zero_byte_read_closes_receiver(self):
        """ check an empty read in any state means the peer closed the stream """
        for prefix in (b"", b"\x05\x00", b"\x05\x00\x00\x00", b"\x05\x00\x00\x00he"):
            with self.subTest(prefix=prefix):
                r = FrameReceiver()
                deliver(r, prefix)
                with self.assertRaises(ConnectionAbortedError):
                    r.feed(b"")
                self.assertEqual(r.state, ReceiveStates.CLOSED)
                self.assertEqual(r.read_size, 0)

                with self.assertRaises(ConnectionClosedError):
                    r.feed(b"x")

    def test_reset_discards_partial_frame(self):
        r = FrameReceiver()
        r.feed(b"\x05\x00\x00\x00")
        r.feed(b"he")
        r.reset()
        self.assertEqual(r.state, ReceiveStates.AWAIT_HEADER)
        self.assertEqual(deliver(r, frame(b"ok")), [b"ok"])

    def test_state_changes_are_logged(self):
        r = FrameReceiver()
        with self.assertLogs("framedsock.stream.framing", level=logging.DEBUG) as log:
            r.feed(b"\x05\x00\x00\x00")
        self.assertIn("waiting for 5 payload bytes", log.output[0])

        with self.assertLogs("framedsock.stream.framing", level=logging.DEBUG) as log:
            with self.assertRaises(ConnectionAbortedError):
                r.feed(b"")
        self.assertIn("Zero byte read in state AWAIT_PAYLOAD", log.output[0])
