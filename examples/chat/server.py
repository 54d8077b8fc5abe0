import logging
from chat import chat
from framedsock.events import AcceptedConnection
from framedsock.stream import ConnectionAcceptor


if __name__ == "__main__":

    import argparse
    from framedsock.runner import Runner, run

    parser = argparse.ArgumentParser(description="Chat Server Example")
    parser.add_argument(
        "--host",
        metavar="<host>",
        type=str,
        default="127.0.0.1",
        help="The host the server will listen on",
    )
    parser.add_argument(
        "--port",
        metavar="<port>",
        type=int,
        default=53123,
        help="The port that the server will listen on",
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

    async def serve(runner: Runner) -> None:
        """ Chat with one client at a time, listening again once it leaves """
        while True:
            accepted = runner.loop.create_future()

            def on_accepted(acc: ConnectionAcceptor, event: AcceptedConnection):
                if accepted.done():
                    # Only chat with the first client
                    event.connection.close()
                    return
                print(f"Client {event.remote_address} accepted!")
                acc.stop()
                accepted.set_result(event.connection)

            acceptor = runner.acceptor(on_accepted=on_accepted)
            acceptor.start(port=args.port, addr=args.host)
            print("Waiting for client...")

            conn = runner.track(await accepted)
            await chat(conn, "Client")
            conn.close()

    run(serve)
