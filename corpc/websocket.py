"""
WebSocket transports for corpc.

Messages travel as JSON text frames. Both the ``websockets`` library and
``aiohttp`` WebSockets are supported, on the client and the server side.
"""

import asyncio
import logging
from abc import abstractmethod
from typing import Any, AsyncIterator, Callable, List, Optional, Set

import aiohttp
import websockets
from aiohttp import web

from .core import Procedures
from .rpc import DEFAULT_TIMEOUT, Corpc, CorpcOptions
from .serialize import deserialize, serialize
from .transport import MessageHandler, MessageTransport

logger = logging.getLogger(__name__)


class StreamTransport(MessageTransport):
    """
    Base class for transports reading frames from a connection.

    ``send`` encodes and queues the frame without blocking; a background
    read loop decodes inbound frames and hands them to every listener.
    Frames that are not valid JSON are dropped.
    """

    def __init__(self):
        self._listeners: List[MessageHandler] = []
        self._closed = False
        self._closed_event = asyncio.Event()
        self._read_task: Optional[asyncio.Task] = None
        self._send_tasks: Set[asyncio.Task] = set()

    @abstractmethod
    async def _send_text(self, text: str) -> None:
        pass

    @abstractmethod
    def _iter_frames(self) -> AsyncIterator[Any]:
        pass

    @abstractmethod
    async def _close_connection(self) -> None:
        pass

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> 'StreamTransport':
        """Start the background read loop."""
        if self._read_task is None:
            self._read_task = asyncio.create_task(self.run())
        return self

    async def run(self) -> None:
        """Read frames until the connection closes."""
        try:
            async for frame in self._iter_frames():
                try:
                    message = deserialize(frame)
                except (ValueError, UnicodeDecodeError) as e:
                    logger.warning(f"Dropping undecodable frame: {e}")
                    continue
                self.deliver(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._closed:
                logger.error(f"WebSocket read loop failed: {e}")
        finally:
            self._closed = True
            self._closed_event.set()

    def deliver(self, message: Any) -> None:
        """Hand a decoded message to the registered listeners."""
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Message listener failed")

    def send(self, message: Any) -> None:
        if self._closed:
            raise RuntimeError("Cannot send on closed transport")

        text = serialize(message)
        task = asyncio.create_task(self._send_safe(text))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send_safe(self, text: str) -> None:
        try:
            await self._send_text(text)
        except Exception as e:
            # The call waiting on this frame will time out
            logger.error(f"Failed to send frame: {e}")
            self._closed = True

    def add_listener(self, listener: MessageHandler) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageHandler) -> None:
        self._listeners.remove(listener)

    async def wait_closed(self) -> None:
        """Wait until the read loop has ended."""
        await self._closed_event.wait()

    async def close(self) -> None:
        """Flush queued frames and close the connection."""
        if self._send_tasks:
            await asyncio.gather(*self._send_tasks, return_exceptions=True)

        self._closed = True
        try:
            await self._close_connection()
        except Exception as e:
            logger.warning(f"Error closing WebSocket: {e}")

        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        self._closed_event.set()


class WebSocketTransport(StreamTransport):
    """Transport over a ``websockets`` client or server connection."""

    def __init__(self, websocket):
        super().__init__()
        self._websocket = websocket

    async def _send_text(self, text: str) -> None:
        await self._websocket.send(text)

    async def _iter_frames(self) -> AsyncIterator[Any]:
        async for frame in self._websocket:
            yield frame

    async def _close_connection(self) -> None:
        await self._websocket.close()


class AiohttpWebSocketTransport(StreamTransport):
    """Transport over an ``aiohttp`` client WebSocket or WebSocketResponse."""

    def __init__(self, websocket):
        super().__init__()
        self._websocket = websocket

    async def _send_text(self, text: str) -> None:
        await self._websocket.send_str(text)

    async def _iter_frames(self) -> AsyncIterator[Any]:
        async for msg in self._websocket:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionError(f"WebSocket error: {self._websocket.exception()}")

    async def _close_connection(self) -> None:
        await self._websocket.close()


class WebSocketCorpcSession:
    """
    Client host connected over ``websockets``.

    Usage:
        async with WebSocketCorpcSession("ws://localhost:8080", {"ping": ping}) as host:
            peer = host.create_rpc()
            print(await peer.status())
    """

    def __init__(self,
                 uri: str,
                 procedures: Optional[Procedures] = None,
                 options: Optional[CorpcOptions] = None):
        self._uri = uri
        self._procedures = procedures
        self._options = options
        self._transport: Optional[WebSocketTransport] = None
        self._host: Optional[Corpc] = None

    async def __aenter__(self) -> Corpc:
        websocket = await websockets.connect(self._uri)
        self._transport = WebSocketTransport(websocket).start()
        self._host = Corpc(self._transport, self._procedures, self._options)
        return self._host

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._host:
            self._host.clean_up()
        if self._transport:
            await self._transport.close()


async def connect_websocket(uri: str,
                            procedures: Optional[Procedures] = None,
                            *,
                            timeout: float = DEFAULT_TIMEOUT,
                            logger: Optional[Callable[..., None]] = None,
                            debug: bool = False) -> Corpc:
    """
    Connect to a corpc WebSocket server and return the client host.

    Close the connection with ``await host.transport.close()``.
    """
    options = CorpcOptions(timeout=timeout, logger=logger, debug=debug)
    websocket = await websockets.connect(uri)
    transport = WebSocketTransport(websocket).start()
    return Corpc(transport, procedures, options)


class WebSocketCorpcServer:
    """WebSocket server giving every connection its own corpc host."""

    def __init__(self,
                 host: str,
                 port: int,
                 procedures_factory: Callable[[], Optional[Procedures]],
                 options: Optional[CorpcOptions] = None,
                 on_connect: Optional[Callable[[Corpc], Any]] = None):
        """
        Initialize the WebSocket corpc server.

        Args:
            host: Host to bind to
            port: Port to bind to (0 picks a free port)
            procedures_factory: Returns the procedures to serve on a new connection
            options: Options shared by every connection's host
            on_connect: Called with each new connection's host, for example to
                create a proxy for calling back into the client
        """
        self._host = host
        self._port = port
        self._procedures_factory = procedures_factory
        self._options = options or CorpcOptions()
        self._on_connect = on_connect
        self._server = None
        self._connections: Set[Corpc] = set()
        self._connection_stats = {
            'total_connections': 0,
            'active_connections': 0,
            'failed_connections': 0
        }

    @property
    def port(self) -> int:
        """The port actually bound, once started."""
        if self._server is None:
            return self._port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Start the WebSocket server."""
        self._server = await websockets.serve(self._handle_connection, self._host, self._port)
        logger.info(f"WebSocket corpc server started on {self._host}:{self.port}")

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            logger.info("WebSocket corpc server stopped")

    async def serve_forever(self) -> None:
        """Start the server and serve until cancelled."""
        await self.start()
        try:
            await self._server.wait_closed()
        finally:
            await self.stop()

    async def __aenter__(self) -> 'WebSocketCorpcServer':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def get_stats(self) -> dict:
        """Get server statistics."""
        self._connection_stats['active_connections'] = len(self._connections)
        return dict(self._connection_stats)

    async def _handle_connection(self, websocket) -> None:
        self._connection_stats['total_connections'] += 1
        logger.info(f"New WebSocket connection from {websocket.remote_address}")

        transport = WebSocketTransport(websocket)
        try:
            host = Corpc(transport, self._procedures_factory(), self._options)
        except Exception as e:
            self._connection_stats['failed_connections'] += 1
            logger.error(f"Error setting up connection from {websocket.remote_address}: {e}")
            return

        self._connections.add(host)
        try:
            if self._on_connect:
                self._on_connect(host)
            await transport.run()
        finally:
            self._connections.discard(host)
            host.clean_up()


def aiohttp_websocket_handler(procedures_factory: Callable[[], Optional[Procedures]],
                              options: Optional[CorpcOptions] = None,
                              on_connect: Optional[Callable[[Corpc], Any]] = None):
    """
    Build an aiohttp request handler serving corpc over a WebSocket.

    Example:
        ```python
        app = web.Application()
        app.router.add_get('/rpc', aiohttp_websocket_handler(lambda: {"ping": ping}))
        ```
    """
    async def handle(request: web.Request) -> web.WebSocketResponse:
        websocket = web.WebSocketResponse()
        await websocket.prepare(request)

        transport = AiohttpWebSocketTransport(websocket)
        host = Corpc(transport, procedures_factory(), options)
        try:
            if on_connect:
                on_connect(host)
            await transport.run()
        finally:
            host.clean_up()
        return websocket

    return handle
