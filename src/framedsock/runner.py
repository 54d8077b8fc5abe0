"""
Run an application built from framed connections and acceptors.

A :class:`Runner` owns an event loop along with the connections and
acceptors created through it. The application's main coroutine is given the
runner so it can create them. The loop keeps running after main returns
because connections and acceptors drive themselves from the loop; it stops
when :meth:`Runner.stop` is called, a SIGINT or SIGTERM is received, or main
fails. On the way out the runner closes everything it owns, listeners first,
so that the demo programs and similar applications need no shutdown code of
their own.
"""

import asyncio
import inspect
import logging

from signal import SIGINT, SIGTERM
from typing import Awaitable, Callable, List, Optional, Union

from framedsock.stream import ConnectionAcceptor, FramedConnection

logger = logging.getLogger(__name__)


Resource = Union[FramedConnection, ConnectionAcceptor]
Main = Callable[["Runner"], Awaitable[None]]


class Runner(object):
    def __init__(self, loop: asyncio.AbstractEventLoop = None):
        """ Initialise Runner

        :param loop: An optional event loop to run. If not supplied a new
          event loop is created. The loop is closed once the runner stops.
        """
        self.loop = loop or asyncio.new_event_loop()
        self._resources = []  # type: List[Resource]
        self._main_task = None  # type: Optional[asyncio.Task]

    @property
    def resources(self) -> List[Resource]:
        """ Return the connections and acceptors closed when the runner stops """
        self._prune()
        return list(self._resources)

    def connection(self, **kwargs) -> FramedConnection:
        """ Create a :class:`FramedConnection` owned by this runner """
        return self.track(FramedConnection(loop=self.loop, **kwargs))

    def acceptor(self, **kwargs) -> ConnectionAcceptor:
        """ Create a :class:`ConnectionAcceptor` owned by this runner """
        return self.track(ConnectionAcceptor(loop=self.loop, **kwargs))

    def track(self, resource):
        """ Close ``resource`` when the runner stops.

        Use this for connections that were not created by the runner, such
        as those handed over by an acceptor.
        """
        self._prune()
        if resource not in self._resources:
            self._resources.append(resource)
        return resource

    def stop(self) -> None:
        """ Stop the runner once the current callbacks have run """
        self.loop.call_soon(self.loop.stop)

    def run(self, main: Optional[Main] = None) -> None:
        """ Run the event loop until the runner is stopped.

        :param main: An optional coroutine function taking the runner as its
          only argument, e.g. ``async def serve(runner)``. It is started once
          the loop is running.
        """
        if main is not None and not inspect.iscoroutinefunction(main):
            raise TypeError(f"main must be a coroutine function, got {main}")
        if self.loop.is_closed():
            raise RuntimeError("Runner has already run")

        logger.debug("Runner starting")
        asyncio.set_event_loop(self.loop)

        self.loop.add_signal_handler(SIGINT, self._on_signal, SIGINT)
        self.loop.add_signal_handler(SIGTERM, self._on_signal, SIGTERM)
        self.loop.set_exception_handler(self._on_loop_error)

        try:
            if main is not None:
                self._main_task = self.loop.create_task(main(self))
                self._main_task.add_done_callback(self._main_done)
            self.loop.run_forever()
        finally:
            self._shutdown()

    def _on_signal(self, sig) -> None:
        logger.info(f"Caught {sig.name}, stopping.")
        self.stop()

    def _on_loop_error(self, loop, context) -> None:
        logger.error(f"Unhandled error in event loop: {context.get('message')}")
        self.stop()

    def _main_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.exception("Application main failed, stopping.", exc_info=exc)
            self.stop()

    def _prune(self) -> None:
        # Connections can't be reopened so closed ones are forgotten.
        self._resources = [
            r for r in self._resources if not getattr(r, "closed", False)
        ]

    def _shutdown(self) -> None:
        logger.debug("Runner shutdown sequence starting")

        self._prune()
        acceptors = [r for r in self._resources if isinstance(r, ConnectionAcceptor)]
        connections = [
            r for r in self._resources if not isinstance(r, ConnectionAcceptor)
        ]
        if self._resources:
            logger.debug(
                f"Closing {len(acceptors)} acceptors and {len(connections)} connections."
            )
        for resource in acceptors + connections:
            resource.close()
        self._resources.clear()

        # Disconnection handlers may have scheduled work of their own
        pending_tasks = asyncio.all_tasks(loop=self.loop)
        if pending_tasks:
            logger.debug(f"Cancelling {len(pending_tasks)} pending tasks.")
            for task in pending_tasks:
                task.cancel()
            self.loop.run_until_complete(
                asyncio.gather(*pending_tasks, return_exceptions=True)
            )

        self.loop.run_until_complete(self.loop.shutdown_asyncgens())

        self.loop.remove_signal_handler(SIGINT)
        self.loop.remove_signal_handler(SIGTERM)
        self.loop.close()
        asyncio.set_event_loop(None)

        logger.debug("Runner stopped")


def run(main: Optional[Main] = None, *, loop: asyncio.AbstractEventLoop = None):
    """ Run ``main`` with a new :class:`Runner` until it is stopped """
    Runner(loop).run(main)
