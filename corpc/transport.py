"""
Transport adapters for corpc.

A transport is anything that can send a discrete message to the peer and
deliver the peer's messages to registered listeners. No ordering or
delivery guarantee is assumed.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], None]


class MessageTransport(ABC):
    """
    Abstract base class for message transports.

    Listeners are opaque to corpc: it only ever passes back to
    ``remove_listener`` an object it previously passed to ``add_listener``,
    and removes each one at most once.
    """

    @abstractmethod
    def send(self, message: Any) -> None:
        """Send a message to the remote peer."""
        pass

    @abstractmethod
    def add_listener(self, listener: Any) -> None:
        """Start delivering inbound messages to ``listener``."""
        pass

    @abstractmethod
    def remove_listener(self, listener: Any) -> None:
        """Stop delivering inbound messages to ``listener``."""
        pass

    def listener(self, handler: MessageHandler) -> Any:
        """
        Wrap a raw-message handler into whatever the listener registry expects.

        The default registry calls listeners with the message itself.
        """
        return handler


class CallbackTransport(MessageTransport):
    """Transport assembled from plain callables supplied by the embedder."""

    def __init__(self,
                 post_message: Callable[[Any], None],
                 add_message_listener: Callable[[Any], None],
                 remove_message_listener: Callable[[Any], None],
                 listener: Optional[Callable[[MessageHandler], Any]] = None):
        """
        Initialize the callback transport.

        Args:
            post_message: Sends one message to the peer
            add_message_listener: Registers a listener with the message source
            remove_message_listener: Deregisters a previously added listener
            listener: Wraps a raw-message handler into a listener; for
                example ``lambda handler: lambda event: handler(event.data)``
        """
        self._post_message = post_message
        self._add_message_listener = add_message_listener
        self._remove_message_listener = remove_message_listener
        self._listener = listener

    def send(self, message: Any) -> None:
        self._post_message(message)

    def add_listener(self, listener: Any) -> None:
        self._add_message_listener(listener)

    def remove_listener(self, listener: Any) -> None:
        self._remove_message_listener(listener)

    def listener(self, handler: MessageHandler) -> Any:
        if self._listener is None:
            return handler
        return self._listener(handler)


class LocalChannel(MessageTransport):
    """
    One end of an in-memory duplex channel.

    Messages sent on one end are delivered synchronously to every listener
    registered on the other end at the time of sending.
    """

    def __init__(self, name: str = "local"):
        self.name = name
        self.peer: Optional['LocalChannel'] = None
        self._listeners: List[MessageHandler] = []
        self._closed = False

    def connect(self, peer: 'LocalChannel') -> None:
        """Wire this end and ``peer`` together."""
        self.peer = peer
        peer.peer = self

    def send(self, message: Any) -> None:
        if self._closed:
            raise RuntimeError("Cannot send on closed channel")
        if self.peer is None:
            raise RuntimeError("Channel is not connected")

        logger.debug(f"{self.name} -> {self.peer.name}: {message!r}")
        self.peer.deliver(message)

    def deliver(self, message: Any) -> None:
        """Hand an inbound message to the listeners registered on this end."""
        if self._closed:
            return

        # Listeners may deregister themselves while handling the message
        for listener in list(self._listeners):
            listener(message)

    def add_listener(self, listener: MessageHandler) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageHandler) -> None:
        self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        """Number of listeners currently registered on this end."""
        return len(self._listeners)

    def close(self) -> None:
        """Stop sending and delivering messages on this end."""
        self._closed = True
        self._listeners.clear()


def local_channel_pair(names: Tuple[str, str] = ("a", "b")) -> Tuple[LocalChannel, LocalChannel]:
    """
    Create two connected in-memory channel ends.

    Example:
        ```python
        left, right = local_channel_pair()
        server = create_corpc({"hello": lambda name: f"Hello, {name}!"}, transport=left)
        client = create_corpc(transport=right).create_rpc()
        assert await client.hello("World") == "Hello, World!"
        ```
    """
    left = LocalChannel(names[0])
    right = LocalChannel(names[1])
    left.connect(right)
    return left, right
