"""
corpc - bidirectional RPC over any message channel

Each side of a channel creates a host that serves its own procedures and
hands out proxies for the peer's procedures. Calls are correlated by id,
so they may complete in any order; a call whose result never arrives
fails with a timeout.
"""

from .core import RpcProxy, RpcStub
from .errors import CorpcError, HandlerNotDefinedError, RemoteProcedureError, RpcTimeoutError
from .rpc import Corpc, CorpcOptions, CorrelationEngine, ProcedureDispatcher, create_corpc
from .serialize import extract_error, is_call_message, is_result_message, serialize, deserialize
from .transport import CallbackTransport, LocalChannel, MessageTransport, local_channel_pair
from .websocket import (
    AiohttpWebSocketTransport, WebSocketTransport, WebSocketCorpcServer, WebSocketCorpcSession,
    aiohttp_websocket_handler, connect_websocket
)

__version__ = "0.1.0"
__all__ = [
    "create_corpc",
    "Corpc",
    "CorpcOptions",
    "CorrelationEngine",
    "ProcedureDispatcher",
    "RpcProxy",
    "RpcStub",
    "CorpcError",
    "RemoteProcedureError",
    "RpcTimeoutError",
    "HandlerNotDefinedError",
    "MessageTransport",
    "CallbackTransport",
    "LocalChannel",
    "local_channel_pair",
    "WebSocketTransport",
    "AiohttpWebSocketTransport",
    "WebSocketCorpcSession",
    "WebSocketCorpcServer",
    "connect_websocket",
    "aiohttp_websocket_handler",
    "extract_error",
    "is_call_message",
    "is_result_message",
    "serialize",
    "deserialize",
]
