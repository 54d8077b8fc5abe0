import asyncio
import logging
import socket

from framedsock.errors import AcceptorStateError
from framedsock.events import AcceptedConnection, dispatch
from framedsock.stream.connection import FramedConnection, get_host_port
from framedsock.stream.framing import BUFFER_SIZE
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


# The length of the queue of connections waiting to be accepted.
BACKLOG = 100

# The delay before accepting again after an accept failed.
ACCEPT_RETRY_DELAY = 0.1


class ConnectionAcceptor(object):
    """
    An acceptor listens on a port and wraps every incoming connection in a
    :class:`FramedConnection`.

    Accepted connections are already receiving when the ``on_accepted``
    callback is called. The ``on_message`` and ``on_disconnected`` callbacks
    passed to the acceptor are installed on every accepted connection. A user
    can replace them for a particular connection by calling
    :meth:`FramedConnection.subscribe` from within ``on_accepted``.
    """

    def __init__(
        self,
        on_accepted=None,
        on_message=None,
        on_disconnected=None,
        backlog: int = BACKLOG,
        buffer_size: int = BUFFER_SIZE,
        loop=None,
    ):
        """ Initialise ConnectionAcceptor

        :param on_accepted: A callback that will be called with the acceptor
          and an :class:`AcceptedConnection` for each accepted connection.

        :param on_message: A callback installed on each accepted connection.

        :param on_disconnected: A callback installed on each accepted
          connection.

        :param backlog: The number of unaccepted connections the operating
          system queues before refusing new connections.

        :param buffer_size: The receive buffer capacity of accepted
          connections.
        """
        self.loop = loop or asyncio.get_event_loop()
        self._on_accepted_handler = on_accepted
        self._on_message_handler = on_message
        self._on_disconnected_handler = on_disconnected
        self._backlog = backlog
        self._buffer_size = buffer_size

        self._running = False
        self._listener = None  # type: Optional[socket.socket]
        self._listener_addr = None  # type: Optional[Tuple[str, int]]
        self._accept_future = None  # type: Optional[asyncio.Future]
        self._retry_handle = None  # type: Optional[asyncio.TimerHandle]
        self._connections = []  # type: List[FramedConnection]

    @property
    def running(self) -> bool:
        """ Return True while the acceptor is listening """
        return self._running

    @property
    def bindings(self) -> Sequence[Tuple[str, int]]:
        """ Return the acceptor's bound addresses """
        return [self._listener_addr] if self._listener_addr else []

    @property
    def port(self) -> Optional[int]:
        """ Return the port the acceptor is listening on """
        return self._listener_addr[1] if self._listener_addr else None

    @property
    def connections(self) -> Sequence[FramedConnection]:
        """ Return the accepted connections that are still open """
        return [conn for conn in self._connections if not conn.closed]

    def start(self, port: int = 0, addr: str = "") -> None:
        """ Bind to a port and begin accepting connections.

        :param port: The port to bind to. Defaults to 0 which results in an
          ephemeral port being used.

        :param addr: The address to bind to. Defaults to an empty string which
          means all interfaces.
        """
        if self._running:
            raise AcceptorStateError("Acceptor is already running")

        logger.debug(f"Starting to listen on {addr}:{port}")

        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((addr, port))
            listener.listen(self._backlog)
            listener.setblocking(False)
        except OSError as exc:
            listener.close()
            logger.error(f"Unexpected error binding to {addr}:{port}: {exc}")
            raise

        self._listener = listener
        self._listener_addr = get_host_port(listener.getsockname())
        self._running = True
        logger.debug(f"Bound listener to {self._listener_addr}")

        self._begin_accept()

    def stop(self) -> None:
        """ Close the listening socket.

        Connections that were already accepted are not affected.
        """
        if not self._running:
            raise AcceptorStateError("Acceptor is not running")

        logger.debug(f"Stopping listener on {self._listener_addr}")

        self._running = False

        if self._accept_future is not None:
            self._accept_future.cancel()
            self._accept_future = None
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

        fd = self._listener.fileno()
        if fd != -1:
            self.loop.remove_reader(fd)
        self._listener.close()
        self._listener = None
        self._listener_addr = None

    def close(self) -> None:
        """ Stop listening, if listening, and close all accepted connections """
        if self._running:
            self.stop()
        for conn in list(self._connections):
            conn.close()
        self._connections.clear()

    async def __aenter__(self) -> "ConnectionAcceptor":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def _begin_accept(self):
        self._retry_handle = None
        if not self._running:
            return
        self._accept_future = self.loop.create_task(self.loop.sock_accept(self._listener))
        self._accept_future.add_done_callback(self._accept_callback)

    def _accept_callback(self, fut: asyncio.Future):
        self._accept_future = None
        if fut.cancelled() or not self._running:
            return

        exc = fut.exception()
        if exc is not None:
            logger.error(f"Error accepting connection on {self._listener_addr}: {exc}")
            self._retry_handle = self.loop.call_later(
                ACCEPT_RETRY_DELAY, self._begin_accept
            )
            return

        sock, remote_address = fut.result()

        # Keep accepting so that any number of clients can connect.
        self._begin_accept()

        try:
            conn = FramedConnection(
                sock=sock,
                on_message=self._on_message_handler,
                on_disconnected=self._on_connection_disconnected,
                buffer_size=self._buffer_size,
                loop=self.loop,
            )
        except OSError as exc:
            # The peer may already have gone away.
            logger.error(f"Error wrapping connection from {remote_address}: {exc}")
            sock.close()
            return

        # A connection whose handlers were replaced with subscribe no longer
        # reports back here, so drop any that have closed.
        self._connections = [c for c in self._connections if not c.closed]
        self._connections.append(conn)

        logger.debug(f"Accepted connection. id={conn.identity}, raddr={conn.raddr}")

        dispatch(
            self.loop,
            self._on_accepted_handler,
            self,
            AcceptedConnection(conn, get_host_port(remote_address)),
            description="on_accepted",
        )

    def _on_connection_disconnected(self, conn: FramedConnection):
        """ Called by an accepted connection when it has been lost """
        # The connection may have been removed by close
        try:
            self._connections.remove(conn)
        except ValueError:
            pass

        dispatch(
            self.loop, self._on_disconnected_handler, conn, description="on_disconnected"
        )
