import asyncio
import binascii
import logging
import os
import socket

from framedsock.errors import (
    AlreadyConnectedError,
    ConnectionClosedError,
    NotConnectedError,
)
from framedsock.events import ConnectionResult, MessageReceived, dispatch
from framedsock.stream.framing import (
    BUFFER_SIZE,
    FrameReceiver,
    ReceiveStates,
    encode_header,
    frame,
)
from typing import Optional, Set, Tuple

logger = logging.getLogger(__name__)


# The delay between checks for the missing bytes of a fragmented header.
HEADER_POLL_INTERVAL = 0.1


def get_host_port(info) -> Tuple[str, int]:
    # Depending on the socket family, the address may be a 2-tuple for
    # IPv4 or a 4-tuple for IPv6. AF_INET6 returns a four-tuple (host, port,
    # flowinfo, scopeid) which is converted to the expected 2-tuple.
    if info and len(info) == 4:
        host, port, _flowinfo, _scopeid = info
        info = (host, port)
    return info


class FramedConnection(object):
    """
    A connection that sends and receives whole messages over a stream socket.

    Every message is preceded on the wire by a 4 byte length header. The
    connection adds the header when sending and uses it when receiving to
    reassemble a message from however many partial reads the network
    delivers.

    A connection is either created unconnected, in which case one of the
    connect methods must be used, or created from an already connected socket
    (e.g. one returned by accept) in which case it starts receiving
    immediately.

    Receiving is driven by a chain of reads. Each completed read feeds the
    framing state machine and then issues the next read so that exactly one
    read is outstanding while the connection is up.

    Users pass callback functions to receive notifications of the outcome of
    a non-blocking connect, of received messages and of the connection being
    lost.
    """

    def __init__(
        self,
        sock: socket.socket = None,
        on_connect_result=None,
        on_message=None,
        on_disconnected=None,
        buffer_size: int = BUFFER_SIZE,
        poll_interval: float = HEADER_POLL_INTERVAL,
        loop=None,
    ):
        """ Initialise FramedConnection

        :param sock: An optional connected stream socket to wrap. When
          supplied the connection is considered connected and starts reading
          straight away. When not supplied a new IPv4 TCP socket is created
          and one of the connect methods must be called.

        :param on_connect_result: A callback that will be called with the
          connection and a :class:`ConnectionResult` once a connection attempt
          started by :meth:`connect_async` completes.

        :param on_message: A callback that will be called with the connection
          and a :class:`MessageReceived` for each message extracted from the
          stream.

        :param on_disconnected: A callback that will be called with the
          connection once the connection is lost. It is called at most once.

        :param buffer_size: The capacity of the receive buffer. This is the
          largest amount of data requested by a single read.

        :param poll_interval: The delay between checks for the remaining bytes
          of a header that arrived fragmented.
        """
        self.loop = loop or asyncio.get_event_loop()
        self._on_connect_result_handler = on_connect_result
        self._on_message_handler = on_message
        self._on_disconnected_handler = on_disconnected
        self._poll_interval = poll_interval

        self._receiver = FrameReceiver(buffer_size)
        self._buffer = bytearray(buffer_size)
        self._view = memoryview(self._buffer)

        self._connected = False
        self._closed = False
        self._identity = binascii.hexlify(os.urandom(5)).decode()
        self._remote_address = None  # type: Optional[Tuple[str, int]]
        self._local_address = None  # type: Optional[Tuple[str, int]]

        self._read_future = None  # type: Optional[asyncio.Future]
        self._connect_task = None  # type: Optional[asyncio.Task]
        self._send_tasks = set()  # type: Set[asyncio.Task]
        self._send_lock = asyncio.Lock()

        if sock is None:
            self._sock = self._create_socket()
        else:
            # The socket is assumed to be connected already.
            sock.setblocking(False)
            self._sock = sock
            self._on_connected()

    @property
    def connected(self) -> bool:
        """ Return True while the connection can send and receive messages """
        return self._connected

    @property
    def closed(self) -> bool:
        """ Return True once the connection has been closed. This is final. """
        return self._closed

    @property
    def identity(self) -> str:
        """ Return a random identifier used to tell connections apart in logs """
        return self._identity

    @property
    def raddr(self) -> Optional[Tuple[str, int]]:
        """ Return the remote address the connection is connected with """
        return self._remote_address

    @property
    def laddr(self) -> Optional[Tuple[str, int]]:
        """ Return the local address the connection is using """
        return self._local_address

    @property
    def state(self) -> ReceiveStates:
        """ Return the state of the receive state machine """
        return self._receiver.state

    def subscribe(self, on_connect_result=None, on_message=None, on_disconnected=None):
        """ Replace notification handlers.

        Only the handlers that are supplied are replaced. This is typically
        used by the receiver of an accepted connection to attach its own
        handlers before the first message is delivered.
        """
        if on_connect_result is not None:
            self._on_connect_result_handler = on_connect_result
        if on_message is not None:
            self._on_message_handler = on_message
        if on_disconnected is not None:
            self._on_disconnected_handler = on_disconnected

    async def connect(self, addr: str, port: int) -> None:
        """ Connect to a server.

        Once this coroutine returns the connection is connected and is
        receiving messages. If the connection attempt fails the error is
        raised and the connection remains unconnected so the attempt can be
        repeated.

        :param addr: The address to connect to.

        :param port: The port to connect to.
        """
        self._check_connectable()
        self._connect_task = self.loop.create_task(self._connect(addr, port))
        try:
            await self._connect_task
        except asyncio.CancelledError:
            if self._closed:
                raise ConnectionClosedError("Connection closed while connecting") from None
            raise

    def connect_async(self, addr: str, port: int) -> asyncio.Task:
        """ Start connecting to a server and return immediately.

        The outcome is reported once through the ``on_connect_result``
        callback. Upon success the connection is already receiving messages
        when the callback runs.

        :param addr: The address to connect to.

        :param port: The port to connect to.

        :returns: the task performing the connection attempt.
        """
        self._check_connectable()
        self._connect_task = self.loop.create_task(self._connect(addr, port))
        self._connect_task.add_done_callback(self._connect_callback)
        return self._connect_task

    def send(self, data: bytes) -> None:
        """ Send a message without waiting for it to be written.

        The header and payload are combined into one buffer which is written
        by a background task. Writes queue behind the per-connection send lock
        so messages reach the wire intact and in the order they were passed
        to :meth:`send` or :meth:`send_ordered`. Use :meth:`flush` to wait
        for them.

        :param data: a bytes-like object containing the message payload.
        """
        self._check_sendable(data)
        msg = frame(data)

        logger.debug(f"Sending msg with {len(msg)} bytes. id={self._identity}")

        task = self.loop.create_task(self._send_queued(msg))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_callback)

    async def send_ordered(self, data: bytes) -> None:
        """ Send a message and wait until it has been written.

        Calls hold the per-connection send lock while writing the header and
        then the payload, so they never interleave with other messages.

        :param data: a bytes-like object containing the message payload.
        """
        self._check_sendable(data)
        header = encode_header(len(data))

        async with self._send_lock:
            # The connection may have been lost while waiting for the lock
            self._check_sendable(data)

            logger.debug(
                f"Sending msg with {len(header) + len(data)} bytes. id={self._identity}"
            )
            await self._write(header)
            await self._write(data)

    async def flush(self) -> None:
        """ Wait for any messages passed to :meth:`send` to be written """
        if self._send_tasks:
            await asyncio.wait(list(self._send_tasks))

    def disconnect(self) -> None:
        """ Shut down the connection with the peer.

        The socket is shut down in both directions so that the peer observes
        an orderly close, then the connection is closed and the
        ``on_disconnected`` callback is called.
        """
        self._check_closed()
        if not self._connected:
            raise NotConnectedError("Can't disconnect, connection is not connected")

        logger.debug(f"Disconnecting. id={self._identity}, raddr={self._remote_address}")
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug(f"Error shutting down socket. id={self._identity}: {exc}")

        self._on_disconnected()

    def close(self) -> None:
        """ Close this connection and release its socket.

        Closing a connected connection reports a disconnection. Closing an
        already closed connection has no effect.
        """
        if self._closed:
            return

        logger.debug(
            f"Closing connection. id={self._identity}, "
            f"laddr={self._local_address}, raddr={self._remote_address}"
        )

        if self._connected:
            self._on_disconnected()
        else:
            self._release()

    async def __aenter__(self) -> "FramedConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def _create_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setblocking(False)
        return sock

    def _check_closed(self):
        if self._closed:
            raise ConnectionClosedError("Connection is closed")

    def _check_connectable(self):
        self._check_closed()
        if self._connected:
            raise AlreadyConnectedError("Connection is already connected")
        if self._connect_task is not None:
            raise AlreadyConnectedError("A connection attempt is already in progress")

    def _check_sendable(self, data):
        self._check_closed()
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"data must be bytes - can't send message. data={type(data)}")
        if not self._connected:
            raise NotConnectedError("Can't send message, connection is not connected")

    async def _connect(self, addr: str, port: int) -> None:
        logger.debug(f"Starting to connect to {addr}:{port}. id={self._identity}")
        try:
            await self.loop.sock_connect(self._sock, (addr, port))
            self._on_connected()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # When connecting to "localhost", some systems try to connect to
            # both 127.0.0.1 and ::1 resulting in an OSError(Multiple errors
            # occurred) that wraps two ConnectionRefusedErrors
            logger.error(f"Connection to {addr}:{port} failed: {exc}")
            if not self._closed:
                # A socket whose connect failed can't be reliably reused.
                self._sock.close()
                self._sock = self._create_socket()
            raise
        finally:
            self._connect_task = None

    def _connect_callback(self, task: asyncio.Task):
        if task.cancelled():
            result = ConnectionResult(
                False, ConnectionClosedError("Connection closed while connecting")
            )
        else:
            exc = task.exception()
            result = ConnectionResult(exc is None, exc)

        dispatch(
            self.loop,
            self._on_connect_result_handler,
            self,
            result,
            description="on_connect_result",
        )

    def _on_connected(self):
        # Resolve the addresses first, the peer may already have reset.
        self._remote_address = get_host_port(self._sock.getpeername())
        self._local_address = get_host_port(self._sock.getsockname())
        self._connected = True
        self._receiver.reset()

        logger.debug(
            f"Connection made. id={self._identity}, "
            f"laddr={self._local_address}, "
            f"raddr={self._remote_address}"
        )

        self._begin_read()

    def _begin_read(self):
        """ Issue the next read requested by the framing state machine """
        if self._closed:
            return

        try:
            if self._receiver.header_fragmented:
                coro = self._top_up_header(self._receiver.read_size)
            else:
                coro = self.loop.sock_recv_into(
                    self._sock, self._view[: self._receiver.read_size]
                )
            self._read_future = self.loop.create_task(coro)
            self._read_future.add_done_callback(self._read_callback)
        except Exception as exc:
            self._on_disconnected(exc)

    async def _top_up_header(self, shortfall: int) -> int:
        """ Complete a header that arrived in pieces.

        The rest of the header is expected to be close behind so it is read
        synchronously, sleeping between attempts while it is not available.
        Bytes are taken as they arrive so that a peer closing the stream part
        way through a header is noticed.
        """
        logger.debug(
            f"Fragmented header, waiting for {shortfall} more bytes. id={self._identity}"
        )
        received = 0
        while received < shortfall:
            try:
                nbytes = self._sock.recv_into(self._view[received:shortfall])
            except (BlockingIOError, InterruptedError):
                await asyncio.sleep(self._poll_interval)
                continue
            if nbytes == 0:
                raise ConnectionAbortedError("Peer closed the stream within a header")
            received += nbytes
        return received

    def _read_callback(self, fut: asyncio.Future):
        self._read_future = None
        if fut.cancelled() or self._closed:
            return

        try:
            nbytes = fut.result()
            msg = self._receiver.feed(self._view[:nbytes])
        except Exception as exc:
            self._on_disconnected(exc)
            return

        # Keep a read outstanding while the application handles the message.
        self._begin_read()

        if msg is not None:
            logger.debug(f"Received msg with {len(msg)} bytes. id={self._identity}")
            dispatch(
                self.loop,
                self._on_message_handler,
                self,
                MessageReceived(msg),
                description="on_message",
            )

    async def _send_queued(self, msg: bytes) -> None:
        # sock_sendall registers a single writer per fd, so only one write
        # may be in progress at a time.
        async with self._send_lock:
            if self._closed:
                return
            await self.loop.sock_sendall(self._sock, msg)

    async def _write(self, data) -> None:
        task = self.loop.create_task(self.loop.sock_sendall(self._sock, data))
        self._send_tasks.add(task)
        try:
            await task
        except asyncio.CancelledError:
            if self._closed:
                raise ConnectionClosedError("Connection closed while sending") from None
            raise
        except Exception as exc:
            self._on_disconnected(exc)
            raise
        finally:
            self._send_tasks.discard(task)

    def _send_callback(self, task: asyncio.Task):
        self._send_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._on_disconnected(exc)

    def _on_disconnected(self, exc: BaseException = None):
        """ Close the connection and notify that it has been lost.

        All disconnection paths end here. The closed flag makes sure the
        notification is only delivered once.
        """
        if self._closed:
            return

        logger.debug(
            f"Connection lost. id={self._identity}, "
            f"laddr={self._local_address}, "
            f"raddr={self._remote_address}, "
            f"reason={exc}"
        )

        self._release()

        dispatch(
            self.loop, self._on_disconnected_handler, self, description="on_disconnected"
        )

    def _release(self):
        self._closed = True
        self._connected = False
        self._receiver.close()

        pending = [self._read_future, self._connect_task, *self._send_tasks]
        for task in pending:
            if task is not None and not task.done():
                task.cancel()
        self._read_future = None
        self._connect_task = None
        self._send_tasks.clear()

        if self._sock is not None:
            fd = self._sock.fileno()
            if fd != -1:
                self.loop.remove_reader(fd)
                self.loop.remove_writer(fd)
            self._sock.close()
            self._sock = None
