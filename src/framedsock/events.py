"""
Records passed to the notification handlers of connections and acceptors.

Handlers are plain callables or coroutine functions. A handler is called
synchronously by whichever operation completed. If the handler returns an
awaitable it is scheduled as a task on the event loop.
"""

import asyncio
import functools
import inspect
import logging

from typing import Any, Callable, NamedTuple, Optional, Set, Tuple

logger = logging.getLogger(__name__)

# Tasks running coroutine handlers
_handler_tasks = set()  # type: Set[asyncio.Task]


class ConnectionResult(NamedTuple):
    """ The outcome of a non-blocking connection attempt """

    connected: bool
    error: Optional[BaseException] = None


class MessageReceived(NamedTuple):
    """ A complete message extracted from the stream """

    payload: bytes


class AcceptedConnection(NamedTuple):
    """ A connection accepted by an acceptor """

    connection: Any  # FramedConnection
    remote_address: Tuple[str, int]


def dispatch(loop, handler: Optional[Callable], *args, description: str = "") -> None:
    """ Call a user supplied handler.

    :param loop: the event loop used to run an awaitable returned by the
      handler.

    :param handler: the user callback. Nothing happens if it is None.

    :param args: the positional arguments passed to the handler.

    :param description: a name for the handler used in log messages.
    """
    if handler is None:
        return

    description = description or "notification"

    # Don't let poor user code break the library
    try:
        maybe_awaitable = handler(*args)
        if inspect.isawaitable(maybe_awaitable):
            task = loop.create_task(maybe_awaitable)
            # The loop only keeps weak references to tasks
            _handler_tasks.add(task)
            task.add_done_callback(functools.partial(_handler_done, description))
    except Exception:
        logger.exception(f"Error in {description} callback method")


def _handler_done(description: str, task: asyncio.Task) -> None:
    _handler_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.exception(f"Error in {description} callback method", exc_info=exc)
