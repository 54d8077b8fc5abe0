import asyncio
import logging
from chat import chat
from framedsock.events import ConnectionResult
from framedsock.stream import FramedConnection


# The delay between connection attempts
RETRY_DELAY = 2.0


if __name__ == "__main__":

    import argparse
    from framedsock.runner import Runner, run

    parser = argparse.ArgumentParser(description="Chat Client Example")
    parser.add_argument(
        "--host",
        metavar="<host>",
        type=str,
        default="127.0.0.1",
        help="The host the server is running on",
    )
    parser.add_argument(
        "--port",
        metavar="<port>",
        type=int,
        default=53123,
        help="The port that the server is listening on",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "error"],
        default="error",
        help="Logging level. Default is 'error'.",
    )

    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s.%(msecs)03.0f [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=getattr(logging, args.log_level.upper()),
    )

    async def start(runner: Runner) -> None:
        while True:
            outcome = runner.loop.create_future()

            def on_connect_result(c: FramedConnection, result: ConnectionResult):
                outcome.set_result(result)

            conn = runner.connection(on_connect_result=on_connect_result)
            conn.connect_async(args.host, args.port)
            result = await outcome
            if result.connected:
                print("Client Connected!")
                await chat(conn, "Server")
                runner.stop()
                return

            print(
                f"Connection could not be made... Retrying in {RETRY_DELAY:.0f} seconds..."
            )
            conn.close()
            await asyncio.sleep(RETRY_DELAY)

    run(start)
