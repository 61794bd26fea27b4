"""
Request/response correlation for corpc.

A Corpc host exposes local procedures to the peer and hands out proxies
for the peer's procedures. Each call is tagged with an id private to the
issuing proxy and settled by the first result message carrying the same
procedure name and id, or by a timeout.
"""

import asyncio
import functools
import inspect
import logging
from types import MappingProxyType
from typing import Any, Callable, Dict, Optional, Set

from .core import Interface, Procedures, RpcProxy
from .errors import HandlerNotDefinedError, RemoteProcedureError, RpcTimeoutError
from .serialize import call_message, extract_error, is_call_message, is_result_message, result_message
from .transport import CallbackTransport, MessageTransport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

EVENT_EMIT = "EVENT::EMIT"
EVENT_HANDLE = "EVENT::HANDLE"
EVENT_SUCCESS = "EVENT::SUCCESS"
EVENT_FAIL = "EVENT::FAIL"
EVENT_UNDEFINED = "EVENT::UNDEFINED"


class CorpcOptions:
    """Configuration options for corpc hosts."""

    def __init__(self,
                 timeout: float = DEFAULT_TIMEOUT,
                 logger: Optional[Callable[..., None]] = None,
                 debug: bool = False):
        """
        Initialize corpc options.

        Args:
            timeout: Seconds to wait for a call's result before failing it
            logger: Trace sink called as ``logger(event, call_id, name)``;
                purely observational
            debug: Emit a DEBUG log record for every traced event
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        self.timeout = timeout
        self.logger = logger
        self.debug = debug

    def trace(self, event: str, call_id: Any, name: str) -> None:
        """Report a protocol event to the debug log and the trace sink."""
        if self.debug:
            logger.debug(f"{event} {name}#{call_id}")
        if self.logger is not None:
            self.logger(event, call_id, name)


class PendingCall:
    """An outbound call waiting for its result."""

    def __init__(self, call_id: int, name: str, future: asyncio.Future):
        self.call_id = call_id
        self.name = name
        self.future = future
        self.timeout_handle: Optional[asyncio.TimerHandle] = None


class CorrelationEngine:
    """
    Issues calls for one proxy and matches results back to them.

    Pending calls live in a table keyed by call id. A single listener is
    registered with the transport while at least one call is pending.
    """

    def __init__(self, transport: MessageTransport, options: Optional[CorpcOptions] = None):
        self.transport = transport
        self.options = options or CorpcOptions()
        self.next_call_id = 0
        self.pending: Dict[int, PendingCall] = {}
        self._listener: Any = None

    def invoke(self, name: str, args: tuple = ()) -> asyncio.Future:
        """
        Send a call to the peer and return a future for its result.

        Errors raised by the transport while sending propagate to the caller.
        """
        loop = asyncio.get_running_loop()

        call_id = self.next_call_id
        self.next_call_id += 1

        pending = PendingCall(call_id, name, loop.create_future())
        self.pending[call_id] = pending
        self._start_listening()
        pending.timeout_handle = loop.call_later(self.options.timeout, self._on_timeout, pending)
        # Covers callers cancelling the future themselves
        pending.future.add_done_callback(lambda _: self._release(pending))

        try:
            self.transport.send(call_message(name, call_id, args))
        except Exception:
            self._release(pending)
            pending.future.cancel()
            raise

        self.options.trace(EVENT_EMIT, call_id, name)
        return pending.future

    def on_message(self, message: Any) -> None:
        """Settle the pending call answered by ``message``, if any."""
        if not is_result_message(message):
            return

        name, call_id, _, was_successful, payload = message

        pending = self.pending.get(call_id)
        if pending is None or pending.name != name:
            return

        self._release(pending)
        if pending.future.done():
            return

        if was_successful:
            pending.future.set_result(payload)
            self.options.trace(EVENT_SUCCESS, pending.call_id, name)
        else:
            pending.future.set_exception(RemoteProcedureError(payload, name, pending.call_id))
            self.options.trace(EVENT_FAIL, pending.call_id, name)

    def _on_timeout(self, pending: PendingCall) -> None:
        pending.timeout_handle = None
        self._release(pending)
        if pending.future.done():
            return

        logger.warning(f"Call {pending.name}#{pending.call_id} timed out after {self.options.timeout}s")
        pending.future.set_exception(RpcTimeoutError(pending.name, pending.call_id))

    def _release(self, pending: PendingCall) -> None:
        """Drop ``pending`` from the table and free its timer; safe to repeat."""
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
            pending.timeout_handle = None

        if self.pending.get(pending.call_id) is pending:
            del self.pending[pending.call_id]
            if not self.pending:
                self._stop_listening()

    def _start_listening(self) -> None:
        if self._listener is None:
            self._listener = self.transport.listener(self.on_message)
            self.transport.add_listener(self._listener)

    def _stop_listening(self) -> None:
        listener = self._listener
        if listener is not None:
            self._listener = None
            self.transport.remove_listener(listener)

    def __repr__(self) -> str:
        return f"<CorrelationEngine pending={len(self.pending)} next_call_id={self.next_call_id}>"


class ProcedureDispatcher:
    """Runs local procedures for inbound calls and sends back their results."""

    def __init__(self, procedures: Procedures, transport: MessageTransport,
                 options: Optional[CorpcOptions] = None):
        self.procedures = procedures
        self.transport = transport
        self.options = options or CorpcOptions()
        self._tasks: Set[asyncio.Future] = set()

    def on_message(self, message: Any) -> None:
        """Handle one inbound message; anything but a known call is ignored."""
        if not is_call_message(message):
            return

        name, call_id = message[0], message[1]
        if name not in self.procedures:
            # The caller only ever sees this as a timeout
            logger.debug(f"Ignoring call to unknown procedure {name}#{call_id}")
            return

        try:
            handler = self.procedures[name]
            if handler is None:
                self.options.trace(EVENT_UNDEFINED, call_id, name)
                raise HandlerNotDefinedError(name)

            self.options.trace(EVENT_HANDLE, call_id, name)
            result = handler(*message[3:])
        except Exception as error:
            self._send_failure(name, call_id, error)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(functools.partial(self._on_settled, name, call_id))
        else:
            self._send_success(name, call_id, result)

    def _on_settled(self, name: str, call_id: Any, task: asyncio.Future) -> None:
        self._tasks.discard(task)

        try:
            if task.cancelled():
                self._send_failure(name, call_id, asyncio.CancelledError("Handler was cancelled"))
                return

            error = task.exception()
            if error is not None:
                self._send_failure(name, call_id, error)
            else:
                self._send_success(name, call_id, task.result())
        except Exception as e:
            # The caller will time out
            logger.error(f"Failed to send result of {name}#{call_id}: {e}")

    def _send_success(self, name: str, call_id: Any, value: Any) -> None:
        try:
            self.transport.send(result_message(name, call_id, True, value))
        except Exception as error:
            logger.debug(f"Could not send result of {name}#{call_id}: {error}")
            self._send_failure(name, call_id, error)

    def _send_failure(self, name: str, call_id: Any, error: BaseException) -> None:
        logger.debug(f"Procedure {name}#{call_id} failed: {error!r}")
        self.transport.send(result_message(name, call_id, False, extract_error(error)))

    @property
    def in_flight(self) -> int:
        """Number of asynchronous handlers that have not settled yet."""
        return len(self._tasks)


class Corpc:
    """
    One side of a corpc channel.

    Serves ``procedures`` to the peer and creates proxies for calling the
    peer's procedures. Local procedures are also available as attributes
    for direct, in-process calls.
    """

    def __init__(self, transport: MessageTransport, procedures: Optional[Procedures] = None,
                 options: Optional[CorpcOptions] = None):
        if transport is None:
            raise ValueError("A transport is required")

        self.transport = transport
        self.options = options or CorpcOptions()
        self._procedures: Optional[Procedures] = None
        self._dispatcher: Optional[ProcedureDispatcher] = None
        self._listener: Any = None

        if procedures is not None:
            for name in procedures:
                if not isinstance(name, str):
                    raise TypeError(f"Procedure names must be strings, got {type(name).__name__}")

            self._procedures = MappingProxyType(dict(procedures))
            self._dispatcher = ProcedureDispatcher(self._procedures, transport, self.options)
            self._listener = transport.listener(self._dispatcher.on_message)
            transport.add_listener(self._listener)

    @property
    def procedures(self) -> Procedures:
        """The local procedures served to the peer (read-only)."""
        if self._procedures is None:
            return MappingProxyType({})
        return self._procedures

    @property
    def listening(self) -> bool:
        """Whether inbound calls are currently being served."""
        return self._listener is not None

    def create_rpc(self, interface: Optional[Interface] = None) -> RpcProxy:
        """
        Create a proxy for the peer's procedures.

        Each proxy numbers its calls independently, starting from 0.

        Args:
            interface: Optional class or iterable of names restricting which
                procedures the proxy exposes
        """
        return RpcProxy(CorrelationEngine(self.transport, self.options), interface)

    def clean_up(self) -> None:
        """
        Stop serving inbound calls.

        Calls already sent through this host's proxies keep running until
        they settle or time out.
        """
        listener = self._listener
        if listener is not None:
            self._listener = None
            self.transport.remove_listener(listener)

    def __getattr__(self, name: str) -> Callable[..., Any]:
        if name.startswith('_'):
            raise AttributeError(name)

        procedures = self._procedures
        if procedures is None or name not in procedures:
            raise AttributeError(f"'{type(self).__name__}' object has no procedure '{name}'")
        return procedures[name]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.clean_up()

    def __repr__(self) -> str:
        names = sorted(self.procedures)
        return f"<Corpc procedures={names} listening={self.listening}>"


def create_corpc(procedures: Optional[Procedures] = None,
                 *,
                 transport: Optional[MessageTransport] = None,
                 post_message: Optional[Callable[[Any], None]] = None,
                 listener: Optional[Callable[[Callable[[Any], None]], Any]] = None,
                 add_message_listener: Optional[Callable[[Any], None]] = None,
                 remove_message_listener: Optional[Callable[[Any], None]] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 logger: Optional[Callable[..., None]] = None,
                 debug: bool = False) -> Corpc:
    """
    Create a corpc host.

    Pass either a ``transport`` or the ``post_message`` /
    ``add_message_listener`` / ``remove_message_listener`` callables (plus
    an optional ``listener`` wrapper). There is no default transport.

    Example:
        ```python
        host = create_corpc(
            {"ping": lambda: "pong"},
            post_message=port.post,
            add_message_listener=port.subscribe,
            remove_message_listener=port.unsubscribe,
        )
        peer = host.create_rpc()
        print(await peer.status())
        host.clean_up()
        ```
    """
    callables = {
        "post_message": post_message,
        "add_message_listener": add_message_listener,
        "remove_message_listener": remove_message_listener,
    }

    if transport is not None:
        if any(value is not None for value in callables.values()) or listener is not None:
            raise ValueError("Pass either a transport or transport callables, not both")
    else:
        missing = [key for key, value in callables.items() if value is None]
        if missing:
            raise ValueError(f"No transport configured; missing {', '.join(missing)}")
        transport = CallbackTransport(post_message, add_message_listener,
                                      remove_message_listener, listener)

    options = CorpcOptions(timeout=timeout, logger=logger, debug=debug)
    return Corpc(transport, procedures, options)
