#!/usr/bin/env python3
"""
Demonstration of corpc over an in-memory channel.

Two hosts talk through a local channel pair, showing calls in both
directions, failures, timeouts and the wire messages involved.
"""

import asyncio
import os
import sys

# Add the parent directory to the path to import corpc
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from corpc import RemoteProcedureError, RpcTimeoutError, create_corpc, local_channel_pair
from corpc.serialize import call_message, result_message


async def long_awaited() -> str:
    await asyncio.sleep(1.0)
    return "finally"


def fail():
    raise ValueError("Simulated fail")


def print_trace(event, call_id, name):
    print(f"  trace: {event} {name}#{call_id}")


async def main():
    print("Wire format:")
    print(f"  call:   {call_message('add', 0, (2, 3))}")
    print(f"  result: {result_message('add', 0, True, 5)}")

    left, right = local_channel_pair(("window_a", "window_b"))

    events_a = create_corpc(
        {"test": lambda: "A TEST", "fail": fail, "longAwaited": long_awaited},
        transport=left,
        timeout=0.5,
        logger=print_trace,
    )
    events_b = create_corpc({"test": lambda: "B TEST"}, transport=right, timeout=0.5)

    proxy_a = events_b.create_rpc()
    proxy_b = events_a.create_rpc()

    print("\nCalls in both directions:")
    print(f"  A says: {await proxy_a.test()}")
    print(f"  B says: {await proxy_b.test()}")

    print("\nLocal procedures are still plain functions:")
    print(f"  events_a.test() -> {events_a.test()}")

    print("\nFailures carry only the message:")
    try:
        await proxy_a.fail()
    except RemoteProcedureError as e:
        print(f"  rejected with {e.payload!r}")

    print("\nSlow handlers lose to the timeout:")
    try:
        await proxy_a.longAwaited()
    except RpcTimeoutError as e:
        print(f"  {e}")

    events_a.clean_up()
    events_b.clean_up()


if __name__ == '__main__':
    asyncio.run(main())
