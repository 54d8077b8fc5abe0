import asyncio
import sys

from framedsock.stream import FramedConnection


async def chat(conn: FramedConnection, peer_name: str) -> None:
    """ Send lines typed on stdin to the peer until the connection is lost.

    Typing ``disconnect`` ends the chat from this side.
    """
    loop = asyncio.get_event_loop()
    lines = asyncio.Queue()  # type: asyncio.Queue

    def on_stdin():
        lines.put_nowait(sys.stdin.readline())

    def on_message(conn, event):
        print(f"{peer_name}: {event.payload.decode('ascii', errors='replace')}")

    def on_disconnected(conn):
        print(f"{peer_name} has disconnected!")
        lines.put_nowait(None)

    conn.subscribe(on_message=on_message, on_disconnected=on_disconnected)
    print("Chat ready!")

    loop.add_reader(sys.stdin, on_stdin)
    try:
        while conn.connected:
            line = await lines.get()
            if line is None or not conn.connected:
                break
            line = line.rstrip("\n")
            if line.lower() == "disconnect":
                conn.disconnect()
                break
            conn.send(line.encode("ascii", errors="replace"))
    finally:
        loop.remove_reader(sys.stdin)
