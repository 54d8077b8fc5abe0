import asyncio
import socket


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """ Wait until ``predicate()`` is true or the timeout expires """
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True


async def recv_exactly(sock: socket.socket, nbytes: int) -> bytes:
    """ Read exactly ``nbytes`` from a non-blocking socket """
    loop = asyncio.get_event_loop()
    data = bytearray()
    while len(data) < nbytes:
        chunk = await loop.sock_recv(sock, nbytes - len(data))
        if not chunk:
            break
        data.extend(chunk)
    return bytes(data)


def unused_port() -> int:
    """ Return a local port that nothing is listening on """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
