import enum
import logging
import struct

from typing import Optional

from framedsock.errors import ConnectionClosedError

logger = logging.getLogger(__name__)


# The frame header is a single little-endian uint32 holding the payload
# length. Both peers must agree on this byte order.
HEADER_FORMAT = "<I"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

# The maximum size of a single socket read.
BUFFER_SIZE = 8192

MAX_MSG_SIZE = 2 ** 32 - 1


class ReceiveStates(enum.Enum):
    AWAIT_HEADER = 0
    AWAIT_PAYLOAD = 1
    CLOSED = 2


def encode_header(length: int) -> bytes:
    """ Return the frame header for a payload of ``length`` bytes """
    if not 0 <= length <= MAX_MSG_SIZE:
        raise ValueError(
            f"Msg size ({length}) must be between 0 and {MAX_MSG_SIZE} bytes"
        )
    return struct.pack(HEADER_FORMAT, length)


def frame(data: bytes) -> bytes:
    """ Return ``data`` prefixed with its frame header as a single buffer.

    .. code-block:: console

        +-----------------+----------------------+
        |  header         |  payload             |
        +-----------------+----------------------+
        |  Message_Length |  DATA ....           |
        |  uint32 (LE)    |                      |
        +-----------------+----------------------+

    """
    return encode_header(len(data)) + bytes(data)


class FrameReceiver(object):
    """
    The receive half of the framing protocol, free of any I/O.

    The owner of a receiver performs one socket read at a time, requesting
    exactly :attr:`read_size` bytes, and passes whatever the read returned to
    :meth:`feed`. The receiver switches between a state where it is
    collecting the frame header and a state where it is collecting the
    message payload. A message is only ever handed back once all of its
    payload bytes have arrived.

    Because every read is sized by the receiver, a read never spans two
    frames. This allows the receiver to handle the worst case delivery
    scenario of a single byte per read, including a header split across
    several reads.
    """

    def __init__(self, buffer_size: int = BUFFER_SIZE):
        if buffer_size < HEADER_SIZE:
            raise ValueError(
                f"buffer_size must be at least {HEADER_SIZE} bytes, got {buffer_size}"
            )
        self.buffer_size = buffer_size
        self._header = bytearray()
        self._payload = None  # type: Optional[bytearray]
        self._remaining = 0
        self._state = ReceiveStates.AWAIT_HEADER

    @property
    def state(self) -> ReceiveStates:
        return self._state

    @property
    def remaining(self) -> int:
        """ Return the number of payload bytes still expected """
        return self._remaining

    @property
    def header_fragmented(self) -> bool:
        """ Return True when only part of a frame header has been received """
        return self._state == ReceiveStates.AWAIT_HEADER and bool(self._header)

    @property
    def read_size(self) -> int:
        """ Return the number of bytes the next read should request """
        if self._state == ReceiveStates.AWAIT_HEADER:
            return HEADER_SIZE - len(self._header)
        elif self._state == ReceiveStates.AWAIT_PAYLOAD:
            return min(self._remaining, self.buffer_size)
        return 0

    def feed(self, data) -> Optional[bytes]:
        """ Process the bytes returned by one completed read.

        :param data: a bytes-like object holding no more than
          :attr:`read_size` bytes.

        :returns: the complete message payload when this read finished a
          message, otherwise None. A frame whose header declares a length of
          zero produces an empty message.

        :raises ConnectionAbortedError: if ``data`` is empty, which means the
          peer closed the stream. The receiver is closed.
        """
        if self._state == ReceiveStates.CLOSED:
            raise ConnectionClosedError("Receiver is closed")

        size = len(data)
        if size == 0:
            logger.debug(f"Zero byte read in state {self._state.name}")
            self.close()
            raise ConnectionAbortedError("Zero byte read, peer closed the stream")

        if size > self.read_size:
            raise ValueError(
                f"Read returned {size} bytes but only {self.read_size} were requested"
            )

        if self._state == ReceiveStates.AWAIT_HEADER:
            self._header.extend(data)
            if len(self._header) < HEADER_SIZE:
                # There are not enough bytes to decode the header yet.
                return None

            (msg_len,) = struct.unpack(HEADER_FORMAT, self._header)
            self._header.clear()
            if msg_len == 0:
                return b""

            logger.debug(f"Header received, waiting for {msg_len} payload bytes")
            self._remaining = msg_len
            self._payload = bytearray()
            self._state = ReceiveStates.AWAIT_PAYLOAD
            return None

        self._payload.extend(data)
        self._remaining -= size
        if self._remaining > 0:
            return None

        msg = bytes(self._payload)
        self._payload = None
        self._state = ReceiveStates.AWAIT_HEADER
        return msg

    def reset(self):
        """ Discard any partial frame and wait for a new header """
        self._header.clear()
        self._payload = None
        self._remaining = 0
        self._state = ReceiveStates.AWAIT_HEADER

    def close(self):
        """ Discard any partial frame. No further reads are expected. """
        self._header.clear()
        self._payload = None
        self._remaining = 0
        self._state = ReceiveStates.CLOSED
