#!/usr/bin/env python3
"""
Simple example demonstrating corpc over WebSockets.

The server and the client each serve procedures to the other side.
"""

import asyncio
import logging
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from corpc import CorpcOptions, RemoteProcedureError, RpcTimeoutError, WebSocketCorpcServer, WebSocketCorpcSession

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def square(number: int) -> int:
    """Square a number, slowly."""
    await asyncio.sleep(0.1)
    return number * number


def divide(a: float, b: float) -> float:
    return a / b


async def greet_client(host) -> None:
    """Call back into a freshly connected client."""
    client = host.create_rpc()
    try:
        name = await client.whoami()
        logger.info(f"Client identifies as: {name}")
    except RpcTimeoutError:
        logger.warning("Client did not answer")


def server_procedures() -> dict:
    return {
        "hello": lambda name: f"Hello, {name}!",
        "square": square,
        "divide": divide,
    }


async def run_server():
    """Run the example server."""
    server = WebSocketCorpcServer(
        "localhost", 8080, server_procedures,
        on_connect=lambda host: asyncio.create_task(greet_client(host)),
    )

    logger.info("Server starting on ws://localhost:8080")
    logger.info("Press Ctrl+C to stop the server")
    await server.serve_forever()


async def run_client():
    """Run the example client."""
    logger.info("Connecting to server...")

    procedures = {"whoami": lambda: "example client"}
    async with WebSocketCorpcSession("ws://localhost:8080", procedures, CorpcOptions(timeout=2.0)) as host:
        api = host.create_rpc()

        greeting = await api.hello("World")
        logger.info(f"Server says: {greeting}")

        # Calls are independent; results may arrive in any order
        squares = await asyncio.gather(*(api.square(n) for n in range(5)))
        logger.info(f"Squares: {squares}")

        try:
            await api.divide(1, 0)
        except RemoteProcedureError as e:
            logger.info(f"Remote failure: {e.payload}")

        try:
            await api.not_defined_anywhere()
        except RpcTimeoutError:
            logger.info("Unknown procedures only show up as timeouts")


async def main():
    if len(sys.argv) > 1:
        if sys.argv[1] == "server":
            await run_server()
        elif sys.argv[1] == "client":
            await run_client()
        else:
            print("Usage: python example_basic.py [server|client]")
            sys.exit(1)
    else:
        print("Choose mode:")
        print("  python example_basic.py server  - Run the server")
        print("  python example_basic.py client  - Run the client")


if __name__ == "__main__":
    asyncio.run(main())
