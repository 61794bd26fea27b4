"""
Call surface classes for corpc.

RpcProxy turns attribute access into RpcStub callables; calling a stub
sends the call through a correlation engine and returns a future for the
remote result.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Protocol, Union

Procedures = Mapping[str, Optional[Callable[..., Any]]]

Interface = Union[type, Iterable[str]]


class Invoker(Protocol):
    """Anything that can carry a call to the peer and return its future result."""

    def invoke(self, name: str, args: tuple) -> asyncio.Future:
        ...


def interface_names(interface: Interface) -> FrozenSet[str]:
    """
    Collect the procedure names declared by ``interface``.

    A class declares its public callables (methods, including abstract or
    Protocol members); any other iterable is taken as the names themselves.
    """
    if isinstance(interface, str):
        raise TypeError("interface must be a class or an iterable of names, not str")

    if inspect.isclass(interface):
        return frozenset(
            name for name, member in inspect.getmembers(interface)
            if not name.startswith('_') and callable(member)
        )

    names = frozenset(interface)
    for name in names:
        if not isinstance(name, str):
            raise TypeError(f"Procedure names must be strings, got {type(name).__name__}")
    return names


class RpcStub:
    """A callable bound to one remote procedure name."""

    def __init__(self, invoker: Invoker, name: str):
        self._invoker = invoker
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def __call__(self, *args) -> asyncio.Future:
        """Call the remote procedure; await the returned future for the result."""
        return self._invoker.invoke(self._name, args)

    def __repr__(self) -> str:
        return f"<RpcStub {self._name!r}>"


class RpcProxy:
    """
    The remote peer's procedures, as attributes.

    Every public attribute access yields an RpcStub for that name, whether
    or not the peer defines it. Calling an undefined procedure is only
    noticed as a timeout. Pass an ``interface`` to restrict the surface
    to declared names.
    """

    def __init__(self, invoker: Invoker, interface: Optional[Interface] = None):
        object.__setattr__(self, '_invoker', invoker)
        object.__setattr__(self, '_names',
                           interface_names(interface) if interface is not None else None)
        object.__setattr__(self, '_stubs', {})

    def __getattr__(self, name: str) -> RpcStub:
        if name.startswith('_'):
            raise AttributeError(name)

        names = self._names
        if names is not None and name not in names:
            raise AttributeError(f"Remote interface declares no procedure '{name}'")

        stubs: Dict[str, RpcStub] = self._stubs
        stub = stubs.get(name)
        if stub is None:
            stub = stubs[name] = RpcStub(self._invoker, name)
        return stub

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent setting attributes on proxies."""
        raise AttributeError("Cannot set attributes on RPC proxies")

    def __dir__(self):
        names = self._names
        if names is None:
            return list(self._stubs)
        return sorted(names)

    def __repr__(self) -> str:
        return f"<RpcProxy via {self._invoker!r}>"
