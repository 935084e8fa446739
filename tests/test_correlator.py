import asyncio

import pytest

from ami_monitor.codec import parse_frame
from ami_monitor.correlator import ActionCorrelator, Completion, CompletionPolicy
from ami_monitor.errors import ActionFailed, ConnectionError, ProtocolError, QueryTimeout


def message(**fields):
    return parse_frame("\r\n".join(f"{k}: {v}" for k, v in fields.items()).encode())


def list_start(aid):
    return message(Response="Success", ActionID=aid, EventList="start", Message="Extension Statuses will follow")


def status_event(aid, exten, status="0"):
    return message(Event="ExtensionStatus", ActionID=aid, Exten=exten, Context="from-internal", Status=status)


@pytest.mark.asyncio
async def test_explicit_completion_event_resolves_immediately():
    correlator = ActionCorrelator()
    pending = correlator.register("ExtensionStateList",
                                  CompletionPolicy.event_list("ExtensionStateListComplete", 5.0), timeout=5)
    aid = pending.action_id

    assert correlator.dispatch(list_start(aid))
    assert correlator.dispatch(status_event(aid, "100"))
    assert correlator.dispatch(status_event(aid, "200", "4"))
    assert not pending.future.done()
    assert correlator.dispatch(message(Event="ExtensionStateListComplete", ActionID=aid, EventList="Complete"))

    result = await asyncio.wait_for(pending.future, 0.5)
    assert result.ok
    assert result.completion is Completion.EVENT
    assert [event["Exten"] for event in result.events] == ["100", "200"]
    assert result.response["EventList"] == "start"
    assert aid not in correlator


@pytest.mark.asyncio
async def test_terminal_response_waits_grace_period_for_trailing_events():
    correlator = ActionCorrelator()
    pending = correlator.register("ExtensionState", CompletionPolicy.response(0.05), timeout=5)
    aid = pending.action_id

    correlator.dispatch(message(Response="Success", ActionID=aid, Exten="100", Status="0"))
    assert not pending.future.done()
    assert correlator.dispatch(status_event(aid, "100"))

    result = await asyncio.wait_for(pending.future, 1)
    assert result.completion is Completion.RESPONSE
    assert len(result.events) == 1
    assert result.response["Exten"] == "100"


@pytest.mark.asyncio
async def test_response_without_grace_resolves_at_once():
    correlator = ActionCorrelator()
    pending = correlator.register("Ping", CompletionPolicy.response(), timeout=5)
    correlator.dispatch(message(Response="Success", ActionID=pending.action_id, Ping="Pong"))
    assert pending.action_id not in correlator
    result = await pending.future
    assert result.ok


@pytest.mark.asyncio
async def test_aggregated_list_response_is_detected():
    correlator = ActionCorrelator()
    pending = correlator.register("ExtensionStateList",
                                  CompletionPolicy.event_list("ExtensionStateListComplete", 0.02), timeout=5)
    correlator.dispatch(parse_frame(
        f"Response: Success\r\nActionID: {pending.action_id}\r\nExtension: 100\r\nStatus: 0".encode()))

    result = await asyncio.wait_for(pending.future, 1)
    assert result.completion is Completion.RESPONSE
    assert result.ok


@pytest.mark.asyncio
async def test_completion_event_during_grace_period_wins():
    correlator = ActionCorrelator()
    pending = correlator.register("ExtensionStateList",
                                  CompletionPolicy.event_list("ExtensionStateListComplete", 10.0), timeout=20)
    aid = pending.action_id
    correlator.dispatch(message(Response="Success", ActionID=aid))
    correlator.dispatch(message(Event="ExtensionStateListComplete", ActionID=aid))
    result = await asyncio.wait_for(pending.future, 0.5)
    assert result.completion is Completion.EVENT


@pytest.mark.asyncio
async def test_timeout_fails_but_keeps_partial_events():
    correlator = ActionCorrelator()
    pending = correlator.register("ExtensionStateList",
                                  CompletionPolicy.event_list("ExtensionStateListComplete"), timeout=0.05)
    aid = pending.action_id
    correlator.dispatch(list_start(aid))
    correlator.dispatch(status_event(aid, "100"))

    result = await asyncio.wait_for(pending.future, 1)
    assert result.completion is Completion.TIMEOUT
    assert isinstance(result.error, QueryTimeout)
    assert len(result.events) == 1
    with pytest.raises(QueryTimeout):
        result.raise_for_status()


@pytest.mark.asyncio
async def test_error_response_resolves_as_failure():
    correlator = ActionCorrelator()
    pending = correlator.register("Login", CompletionPolicy.response(1.0), timeout=5)
    correlator.dispatch(message(Response="Error", ActionID=pending.action_id, Message="Authentication failed"))
    result = await asyncio.wait_for(pending.future, 0.5)
    assert isinstance(result.error, ActionFailed)
    assert result.error.message == "Authentication failed"


@pytest.mark.asyncio
async def test_resolved_action_no_longer_claims_messages():
    correlator = ActionCorrelator()
    pending = correlator.register("Ping", CompletionPolicy.response(), timeout=5)
    aid = pending.action_id
    correlator.dispatch(message(Response="Success", ActionID=aid))
    assert not correlator.dispatch(status_event(aid, "100"))
    assert not correlator.dispatch(message(Response="Success", ActionID=aid))
    assert len((await pending.future).events) == 0


@pytest.mark.asyncio
async def test_foreign_messages_are_not_claimed():
    correlator = ActionCorrelator()
    correlator.register("Ping", CompletionPolicy.response(), timeout=5)
    assert not correlator.dispatch(message(Event="ExtensionStatus", Exten="100", Status="0"))
    assert not correlator.dispatch(message(Event="ExtensionStatus", ActionID="other-1", Exten="100"))


@pytest.mark.asyncio
async def test_one_pending_action_per_id():
    correlator = ActionCorrelator()
    correlator.register("Ping", CompletionPolicy.response(), timeout=5, action_id="fixed-1")
    with pytest.raises(ProtocolError):
        correlator.register("Ping", CompletionPolicy.response(), timeout=5, action_id="fixed-1")
    correlator.fail_all(ConnectionError("test over"))


@pytest.mark.asyncio
async def test_action_ids_are_unique_and_prefixed():
    first, second = ActionCorrelator(), ActionCorrelator()
    ids = {first.next_action_id() for _ in range(100)}
    assert len(ids) == 100
    assert first.next_action_id().split("-")[0] != second.next_action_id().split("-")[0]


@pytest.mark.asyncio
async def test_fail_all_is_idempotent_against_late_resolution():
    correlator = ActionCorrelator()
    pending = correlator.register("ExtensionStateList",
                                  CompletionPolicy.event_list("ExtensionStateListComplete"), timeout=5)
    aid = pending.action_id
    correlator.dispatch(list_start(aid))
    correlator.dispatch(status_event(aid, "100"))

    assert correlator.fail_all(ConnectionError("Connection lost")) == 1
    assert not correlator.dispatch(message(Event="ExtensionStateListComplete", ActionID=aid))
    assert correlator.fail_all(ConnectionError("again")) == 0

    result = await pending.future
    assert result.completion is Completion.ABORTED
    assert isinstance(result.error, ConnectionError)
    assert str(result.error) == "Connection lost"
    assert len(result.events) == 1


@pytest.mark.asyncio
async def test_cancelled_caller_discards_pending_action():
    correlator = ActionCorrelator()
    pending = correlator.register("Ping", CompletionPolicy.response(), timeout=5)
    pending.future.cancel()
    await asyncio.sleep(0)
    assert len(correlator) == 0
