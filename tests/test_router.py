import asyncio

import pytest

from ami_monitor.codec import parse_frame
from ami_monitor.router import EventRouter


def event(name, **fields):
    lines = [f"Event: {name}"] + [f"{k}: {v}" for k, v in fields.items()]
    return parse_frame("\r\n".join(lines).encode())


@pytest.mark.asyncio
async def test_subscription_receives_matching_events_in_order():
    router = EventRouter()
    subscription = router.subscribe("ExtensionStatus")
    for exten in ("100", "200", "300"):
        router.dispatch(event("ExtensionStatus", Exten=exten))
    router.dispatch(event("PeerStatus", Peer="PJSIP/100"))
    subscription.close()

    received = [message["Exten"] async for message in subscription]
    assert received == ["100", "200", "300"]


@pytest.mark.asyncio
async def test_wildcard_subscription_and_receiver_count():
    router = EventRouter()
    everything = router.subscribe()
    router.subscribe(("PeerStatus", "Hangup"))
    assert router.dispatch(event("PeerStatus")) == 2
    assert router.dispatch(event("Newchannel")) == 1
    assert (await everything.get()).name == "PeerStatus"


@pytest.mark.asyncio
async def test_unmatched_event_has_no_receiver():
    router = EventRouter()
    router.subscribe("ExtensionStatus")
    assert router.dispatch(event("FullyBooted")) == 0


@pytest.mark.asyncio
async def test_bounded_subscription_drops_overflow():
    router = EventRouter()
    subscription = router.subscribe("*", maxsize=2)
    for i in range(5):
        router.dispatch(event("Test", Seq=i))
    assert subscription.dropped == 3
    assert (await subscription.get())["Seq"] == "0"


@pytest.mark.asyncio
async def test_callbacks_get_event_and_owner():
    owner = object()
    router = EventRouter(owner=owner)
    calls = []

    async def on_status(message, client):
        calls.append((message["Exten"], client))

    async def on_any(message, client):
        calls.append((message.name, client))

    router.register_callback("ExtensionStatus", on_status)
    router.register_callback("*", on_any)
    assert router.dispatch(event("ExtensionStatus", Exten="100")) == 2
    await asyncio.sleep(0.01)
    assert calls == [("100", owner), ("ExtensionStatus", owner)]


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_dispatch():
    router = EventRouter()

    async def broken(message, client):
        raise RuntimeError("boom")

    router.register_callback("Test", broken)
    subscription = router.subscribe("Test")
    router.dispatch(event("Test"))
    await asyncio.sleep(0.01)
    router.dispatch(event("Test"))
    assert subscription._queue.qsize() == 2


@pytest.mark.asyncio
async def test_close_ends_every_subscription():
    router = EventRouter()
    first = router.subscribe("A")
    second = router.subscribe("B", maxsize=1)
    router.dispatch(event("B"))
    router.close()

    assert await first.get() is None
    assert (await second.get()).name == "B"
    assert await second.get() is None
    assert router.dispatch(event("A")) == 0
