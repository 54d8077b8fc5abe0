import asyncio
import logging
import unittest
import unittest.mock

from framedsock import events
from framedsock.events import (
    AcceptedConnection,
    ConnectionResult,
    MessageReceived,
    dispatch,
)


class EventRecordsTestCase(unittest.TestCase):
    def test_records_are_immutable(self):
        result = ConnectionResult(True)
        self.assertTrue(result.connected)
        self.assertIsNone(result.error)
        with self.assertRaises(AttributeError):
            result.connected = False

        msg = MessageReceived(b"hello")
        self.assertEqual(msg.payload, b"hello")
        with self.assertRaises(AttributeError):
            msg.payload = b""

        accepted = AcceptedConnection(None, ("127.0.0.1", 1234))
        self.assertEqual(accepted.remote_address, ("127.0.0.1", 1234))


class DispatchTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_dispatch_calls_handler(self):
        handler = unittest.mock.Mock()
        dispatch(asyncio.get_event_loop(), handler, 1, 2, description="test")
        handler.assert_called_once_with(1, 2)

    async def test_dispatch_without_handler(self):
        dispatch(asyncio.get_event_loop(), None, 1)

    async def test_dispatch_schedules_coroutines(self):
        handler = unittest.mock.AsyncMock()
        dispatch(asyncio.get_event_loop(), handler, "a")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        handler.assert_awaited_once_with("a")

    async def test_dispatch_logs_handler_errors(self):
        handler = unittest.mock.Mock(side_effect=Exception("Boom"))
        with self.assertLogs("framedsock.events", level=logging.ERROR) as log:
            dispatch(asyncio.get_event_loop(), handler, description="on_test")
        self.assertIn("Error in on_test callback method", log.output[0])

    async def test_dispatch_keeps_coroutine_handlers_alive(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler():
            started.set()
            await release.wait()

        before = len(events._handler_tasks)
        dispatch(asyncio.get_event_loop(), handler, description="on_test")
        await asyncio.wait_for(started.wait(), 1.0)
        self.assertEqual(len(events._handler_tasks), before + 1)

        release.set()
        await asyncio.sleep(0.01)
        self.assertEqual(len(events._handler_tasks), before)

    async def test_dispatch_logs_coroutine_handler_errors(self):
        handler = unittest.mock.AsyncMock(side_effect=Exception("Boom"))
        with self.assertLogs("framedsock.events", level=logging.ERROR) as log:
            dispatch(asyncio.get_event_loop(), handler, description="on_test")
            await asyncio.sleep(0.01)
        self.assertIn("Error in on_test callback method", log.output[0])
        self.assertIn("Boom", "\n".join(log.output))
