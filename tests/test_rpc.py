"""
Tests for call correlation, dispatch and host lifecycle.
"""

import asyncio
import json
import logging

import pytest

from corpc import (
    Corpc, CorpcOptions, CorrelationEngine, create_corpc, local_channel_pair,
    RemoteProcedureError, RpcTimeoutError
)
from corpc.rpc import EVENT_EMIT, EVENT_FAIL, EVENT_HANDLE, EVENT_SUCCESS, EVENT_UNDEFINED
from corpc.serialize import result_message


class Window:
    """Message endpoint delivering its posts to the peer window's listeners."""

    def __init__(self):
        self.listeners = set()
        self.peer = None
        self.posted = []

    def post_message(self, message):
        self.posted.append(message)
        self.peer.on_message(message)

    def add_listener(self, handler):
        self.listeners.add(handler)

    def remove_listener(self, handler):
        self.listeners.remove(handler)

    def on_message(self, message):
        for listener in list(self.listeners):
            listener(message)


def window_pair():
    window_a, window_b = Window(), Window()
    window_a.peer, window_b.peer = window_b, window_a
    return window_a, window_b


def host_factory(window, procedures=None, timeout=5.0, **kwargs):
    return create_corpc(
        procedures,
        post_message=window.post_message,
        add_message_listener=window.add_listener,
        remove_message_listener=window.remove_listener,
        timeout=timeout,
        **kwargs,
    )


@pytest.mark.asyncio
class TestSyncProcedures:
    """Test procedures returning plain values or raising."""

    async def test_success(self):
        """Test that each side reaches the other's procedure."""
        window_a, window_b = window_pair()
        events_a = host_factory(window_a, {"test": lambda: "A TEST"})
        events_b = host_factory(window_b, {"test": lambda: "B TEST"})

        proxy_a = events_b.create_rpc()
        proxy_b = events_a.create_rpc()

        assert await proxy_a.test() == "A TEST"
        assert await proxy_b.test() == "B TEST"

        events_a.clean_up()
        events_b.clean_up()

    async def test_arguments_in_order(self):
        window_a, window_b = window_pair()
        host_factory(window_a, {"describe": lambda *args: list(args)})
        proxy = host_factory(window_b).create_rpc()

        assert await proxy.describe(1, "two", [3], {"four": 4}) == [1, "two", [3], {"four": 4}]
        assert window_b.posted[0] == ["describe", 0, False, 1, "two", [3], {"four": 4}]

    async def test_fail(self):
        """Test that a raised error arrives as its message."""
        def fail():
            raise ValueError("Simulated fail")

        window_a, window_b = window_pair()
        events_a = host_factory(window_a, {"test": fail})
        events_b = host_factory(window_b, {"test": fail})

        with pytest.raises(RemoteProcedureError, match="Simulated fail") as exc_info:
            await events_b.create_rpc().test()
        assert exc_info.value.payload == "Simulated fail"

        with pytest.raises(RemoteProcedureError, match="Simulated fail"):
            await events_a.create_rpc().test()

    async def test_result_message_layout(self):
        window_a, window_b = window_pair()
        host_factory(window_a, {"test": lambda: "A TEST"})
        proxy = host_factory(window_b).create_rpc()

        await proxy.test()
        assert window_a.posted == [["test", 0, True, True, "A TEST"]]

    async def test_call_ids_increase_per_proxy(self):
        """Test that every proxy numbers its calls from zero."""
        window_a, window_b = window_pair()
        host_factory(window_a, {"echo": lambda value: value})
        events_b = host_factory(window_b)

        first, second = events_b.create_rpc(), events_b.create_rpc()
        await first.echo(1)
        await first.echo(2)
        await second.echo(3)

        assert [message[1] for message in window_b.posted] == [0, 1, 0]

    async def test_listeners_released_after_settle(self):
        """Test that a proxy holds no listener once its calls have settled."""
        window_a, window_b = window_pair()
        host_factory(window_a, {"test": lambda: "A TEST"})
        events_b = host_factory(window_b)

        assert len(window_b.listeners) == 0
        await events_b.create_rpc().test()
        assert len(window_b.listeners) == 0


@pytest.mark.asyncio
class TestAsyncProcedures:
    """Test procedures that settle later."""

    async def test_success(self):
        async def long_awaited():
            await asyncio.sleep(0.05)
            return "A longAwaited"

        window_a, window_b = window_pair()
        host_factory(window_a, {"longAwaited": long_awaited})
        proxy = host_factory(window_b).create_rpc()

        assert await proxy.longAwaited() == "A longAwaited"

    async def test_returned_future(self):
        """Test handlers that return an awaitable without being coroutines."""
        def deferred():
            future = asyncio.get_running_loop().create_future()
            asyncio.get_running_loop().call_later(0.01, future.set_result, "later")
            return future

        window_a, window_b = window_pair()
        host_factory(window_a, {"deferred": deferred})
        proxy = host_factory(window_b).create_rpc()

        assert await proxy.deferred() == "later"

    async def test_fail(self):
        async def long_awaited():
            await asyncio.sleep(0.05)
            raise RuntimeError("Simulated fail")

        window_a, window_b = window_pair()
        host_factory(window_a, {"longAwaited": long_awaited})
        proxy = host_factory(window_b).create_rpc()

        with pytest.raises(RemoteProcedureError) as exc_info:
            await proxy.longAwaited()
        assert exc_info.value.payload == "Simulated fail"

    async def test_timeout(self):
        """Test that a slow handler loses to the caller's timeout."""
        async def long_awaited():
            await asyncio.sleep(0.2)
            return "A longAwaited"

        window_a, window_b = window_pair()
        events_a = host_factory(window_a, {"longAwaited": long_awaited}, timeout=0.05)
        proxy = host_factory(window_b, timeout=0.05).create_rpc()

        with pytest.raises(RpcTimeoutError, match="timed out"):
            await proxy.longAwaited()
        assert len(window_b.listeners) == 0

        # The late result is ignored
        await asyncio.sleep(0.25)
        assert window_a.posted == [["longAwaited", 0, True, True, "A longAwaited"]]
        events_a.clean_up()

    async def test_dispatch_does_not_block(self):
        """Test that a pending handler does not hold up other calls."""
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "slow"

        window_a, window_b = window_pair()
        events_a = host_factory(window_a, {"slow": slow, "fast": lambda: "fast"})
        proxy = host_factory(window_b).create_rpc()

        slow_call = proxy.slow()
        assert await proxy.fast() == "fast"
        assert not slow_call.done()
        assert events_a._dispatcher.in_flight == 1

        release.set()
        assert await slow_call == "slow"
        assert events_a._dispatcher.in_flight == 0


@pytest.mark.asyncio
class TestCorrelation:
    """Test matching of results to pending calls."""

    async def test_unknown_procedure_times_out(self):
        window_a, window_b = window_pair()
        host_factory(window_a, {"test": lambda: "A TEST"})
        proxy = host_factory(window_b, timeout=0.05).create_rpc()

        with pytest.raises(RpcTimeoutError):
            await proxy.missing()
        assert window_a.posted == []

    async def test_out_of_order_results(self):
        """Test that results settle the right calls whatever their order."""
        left, right = local_channel_pair()
        calls = []
        right.add_listener(calls.append)

        proxy = Corpc(left).create_rpc()
        first = proxy.p("x")
        second = proxy.q("y")
        assert calls == [["p", 0, False, "x"], ["q", 1, False, "y"]]

        right.send(result_message("q", 1, False, "q failed"))
        right.send(result_message("p", 0, True, "p done"))

        assert await first == "p done"
        with pytest.raises(RemoteProcedureError, match="q failed"):
            await second

    async def test_concurrent_calls_same_procedure(self):
        left, right = local_channel_pair()
        proxy = Corpc(left).create_rpc()

        first, second = proxy.p(1), proxy.p(2)
        right.send(result_message("p", 1, True, "second"))
        right.send(result_message("p", 0, True, "first"))

        assert await asyncio.gather(first, second) == ["first", "second"]

    async def test_mismatched_results_are_ignored(self):
        """Test that results for other ids or names have no effect."""
        left, right = local_channel_pair()
        proxy = Corpc(left).create_rpc()

        call = proxy.p()
        right.send(result_message("p", 5, True, "wrong id"))
        right.send(result_message("q", 0, True, "wrong name"))
        await asyncio.sleep(0)
        assert not call.done()

        right.send(result_message("p", 0, True, "right"))
        assert await call == "right"

    async def test_noise_is_ignored(self):
        left, right = local_channel_pair()
        proxy = Corpc(left).create_rpc()

        call = proxy.p()
        for noise in [None, "p", 0, {"type": "result"}, ["p"], ["p", 0, True, "yes", 1], ["p", 0, False]]:
            right.send(noise)
        await asyncio.sleep(0)
        assert not call.done()

        right.send(["p", 0, True, True, "ok"])
        assert await call == "ok"

    async def test_duplicate_results_are_idempotent(self):
        left, right = local_channel_pair()
        proxy = Corpc(left).create_rpc()

        call = proxy.p()
        right.send(result_message("p", 0, True, "first"))
        right.send(result_message("p", 0, False, "replayed"))

        assert await call == "first"
        assert left.listener_count == 0

    async def test_one_listener_for_many_calls(self):
        left, right = local_channel_pair()
        proxy = Corpc(left).create_rpc()

        calls = [proxy.p(i) for i in range(3)]
        assert left.listener_count == 1

        for call_id in range(3):
            right.send(result_message("p", call_id, True, call_id))
        assert await asyncio.gather(*calls) == [0, 1, 2]
        assert left.listener_count == 0

    async def test_cancelled_call_is_released(self):
        left, right = local_channel_pair()
        engine = CorrelationEngine(left, CorpcOptions(timeout=10.0))

        call = engine.invoke("p", ())
        assert 0 in engine.pending

        call.cancel()
        await asyncio.sleep(0)
        assert engine.pending == {}
        assert left.listener_count == 0

        # A late result does nothing
        right.send(result_message("p", 0, True, "late"))

    async def test_wait_for_cancels_call(self):
        left, _ = local_channel_pair()
        engine = CorrelationEngine(left)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.invoke("p", ()), 0.01)
        assert engine.pending == {}

    async def test_send_errors_propagate(self):
        """Test that transport failures reach the caller immediately."""
        listeners = []

        def post_message(message):
            raise ConnectionError("channel closed")

        host = create_corpc(
            post_message=post_message,
            add_message_listener=listeners.append,
            remove_message_listener=listeners.remove,
        )
        proxy = host.create_rpc()

        with pytest.raises(ConnectionError, match="channel closed"):
            proxy.test()
        assert listeners == []

    async def test_listener_wrapping(self):
        """Test that listeners may receive events wrapping the message."""
        class Event:
            def __init__(self, data):
                self.data = data

        window_a, window_b = window_pair()

        def factory(window, procedures=None):
            return create_corpc(
                procedures,
                post_message=lambda message: window.post_message(Event(message)),
                listener=lambda handler: lambda event: handler(event.data),
                add_message_listener=window.add_listener,
                remove_message_listener=window.remove_listener,
            )

        factory(window_a, {"test": lambda: "A TEST"})
        proxy = factory(window_b).create_rpc()

        assert await proxy.test() == "A TEST"


@pytest.mark.asyncio
class TestDispatcher:
    """Test handling of inbound calls."""

    async def test_undefined_handler(self):
        events = []
        window_a, window_b = window_pair()
        host_factory(window_a, {"test": None}, logger=lambda *args: events.append(args))
        proxy = host_factory(window_b).create_rpc()

        with pytest.raises(RemoteProcedureError, match="Handler has not been defined"):
            await proxy.test()
        assert events == [(EVENT_UNDEFINED, 0, "test")]

    async def test_malformed_calls_are_ignored(self):
        """Test that a serving host answers nothing but well-shaped calls."""
        left, right = local_channel_pair()
        received = []
        right.add_listener(received.append)
        handled = []
        Corpc(left, {"p": lambda *args: handled.append(args)})

        for noise in [None, ["p"], ["p", "0", False], ["p", 0, None], ["p", 0, True, True, 1]]:
            right.send(noise)
        await asyncio.sleep(0)

        assert received == []
        assert handled == []

    async def test_closed_transport_after_async_handler(self, caplog):
        """Test that a result with nowhere to go is logged, not raised from a callback."""
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "done"

        loop_errors = []
        loop = asyncio.get_running_loop()
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(lambda loop, context: loop_errors.append(context))

        try:
            left, right = local_channel_pair()
            host = Corpc(left, {"slow": slow})
            right.send(["slow", 0, False])
            assert host._dispatcher.in_flight == 1

            left.close()
            with caplog.at_level(logging.ERROR, logger="corpc.rpc"):
                release.set()
                for _ in range(5):
                    await asyncio.sleep(0)
        finally:
            loop.set_exception_handler(previous_handler)

        assert host._dispatcher.in_flight == 0
        assert loop_errors == []
        assert any("Failed to send result of slow#0" in record.getMessage() for record in caplog.records)

    async def test_unsendable_result_becomes_failure(self):
        """Test that a result the transport rejects is reported as a failure."""
        window_a, window_b = window_pair()

        def json_post(message):
            window_a.post_message(json.loads(json.dumps(message)))

        create_corpc(
            {"test": lambda: object()},
            post_message=json_post,
            add_message_listener=window_a.add_listener,
            remove_message_listener=window_a.remove_listener,
        )
        proxy = host_factory(window_b).create_rpc()

        with pytest.raises(RemoteProcedureError, match="not JSON serializable"):
            await proxy.test()

    async def test_cancelled_handler(self):
        async def never():
            await asyncio.sleep(10)

        window_a, window_b = window_pair()
        events_a = host_factory(window_a, {"never": never})
        proxy = host_factory(window_b).create_rpc()

        call = proxy.never()
        await asyncio.sleep(0)
        for task in list(events_a._dispatcher._tasks):
            task.cancel()

        with pytest.raises(RemoteProcedureError, match="cancelled"):
            await call

    async def test_trace_events(self):
        """Test that the trace sink sees each protocol step."""
        def fail():
            raise ValueError("nope")

        trace_a, trace_b = [], []
        window_a, window_b = window_pair()
        host_factory(window_a, {"ok": lambda: 1, "fail": fail}, logger=lambda *args: trace_a.append(args))
        proxy = host_factory(window_b, logger=lambda *args: trace_b.append(args)).create_rpc()

        await proxy.ok()
        with pytest.raises(RemoteProcedureError):
            await proxy.fail()

        assert trace_a == [(EVENT_HANDLE, 0, "ok"), (EVENT_HANDLE, 1, "fail")]
        assert (EVENT_SUCCESS, 0, "ok") in trace_b
        assert (EVENT_FAIL, 1, "fail") in trace_b
        assert [event for event in trace_b if event[0] == EVENT_EMIT] == [
            (EVENT_EMIT, 0, "ok"), (EVENT_EMIT, 1, "fail")
        ]


@pytest.mark.asyncio
class TestHostLifecycle:
    """Test host construction and teardown."""

    async def test_clean_up_stops_responding(self):
        window_a, window_b = window_pair()
        events_a = host_factory(window_a, {"test": lambda: "A TEST"})
        proxy = host_factory(window_b, timeout=0.05).create_rpc()

        assert await proxy.test() == "A TEST"

        events_a.clean_up()
        assert not events_a.listening
        assert len(window_a.listeners) == 0

        with pytest.raises(RpcTimeoutError):
            await proxy.test()

        # Only ever removed once
        events_a.clean_up()

    async def test_clean_up_leaves_outbound_calls_running(self):
        window_a, window_b = window_pair()
        host_factory(window_a, {"test": lambda: "A TEST"})
        events_b = host_factory(window_b, {"other": lambda: None})
        proxy = events_b.create_rpc()

        events_b.clean_up()
        assert await proxy.test() == "A TEST"

    async def test_host_without_procedures_does_not_listen(self):
        window_a, _ = window_pair()
        host = host_factory(window_a)

        assert not host.listening
        assert len(window_a.listeners) == 0
        assert dict(host.procedures) == {}
        host.clean_up()

    async def test_context_manager(self):
        window_a, _ = window_pair()
        with host_factory(window_a, {"test": lambda: "A TEST"}) as host:
            assert len(window_a.listeners) == 1
        assert not host.listening
        assert len(window_a.listeners) == 0


class TestHostSurface:
    """Test the host's local surface and configuration checks."""

    def test_procedures_exposed_locally(self):
        window_a, _ = window_pair()
        host = host_factory(window_a, {"test": lambda: "A TEST", "add": lambda a, b: a + b})

        assert host.test() == "A TEST"
        assert host.add(2, 3) == 5
        with pytest.raises(AttributeError):
            host.missing
        with pytest.raises(TypeError):
            host.procedures["test"] = None

    def test_host_methods_shadow_procedures(self):
        window_a, _ = window_pair()
        host = host_factory(window_a, {"clean_up": lambda: "remote clean up"})

        assert host.procedures["clean_up"]() == "remote clean up"
        host.clean_up()
        assert not host.listening

    def test_procedures_are_copied(self):
        procedures = {"test": lambda: "A TEST"}
        window_a, _ = window_pair()
        host = host_factory(window_a, procedures)

        procedures["late"] = lambda: "late"
        assert "late" not in host.procedures

    def test_requires_transport(self):
        with pytest.raises(ValueError, match="post_message"):
            create_corpc({"test": lambda: None})

        with pytest.raises(ValueError):
            Corpc(None)

    def test_rejects_transport_and_callables(self):
        left, _ = local_channel_pair()
        with pytest.raises(ValueError, match="not both"):
            create_corpc(transport=left, post_message=print)

    def test_rejects_non_string_names(self):
        left, _ = local_channel_pair()
        with pytest.raises(TypeError):
            Corpc(left, {1: lambda: None})

    def test_rejects_bad_timeout(self):
        window_a, _ = window_pair()
        with pytest.raises(ValueError):
            host_factory(window_a, timeout=0)


if __name__ == "__main__":
    pytest.main([__file__])
