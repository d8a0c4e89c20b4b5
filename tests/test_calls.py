import asyncio

import pytest

from fakes import make_user
from realtime import call_channel
from services.calls import CallState, CallType
from services.errors import AuthorizationDenied, NotFound, ProtocolMisuse


@pytest.fixture()
def workspace(persistence):
    for user_id in ("alice", "bob", "carol"):
        persistence.add_user(user_id)
        persistence.add_member("w1", user_id)
    return "w1"


def _connect(coordinator, *user_ids):
    return [coordinator.sessions.register_connection(u, make_user(u)) for u in user_ids]


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


def test_call_to_non_member_is_refused(coordinator, emitter, workspace):
    async def _run():
        alice, dave = _connect(coordinator, "alice", "dave")
        with pytest.raises(AuthorizationDenied, match="Both users must be in the same workspace"):
            await coordinator.calls.start_call(alice, "dave", workspace)
        return dave

    dave = asyncio.run(_run())
    assert coordinator.calls.active_call_count == 0
    assert emitter.events(dave) == []


def test_one_to_one_lifecycle(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        call = await calls.start_call(alice, "bob", workspace)
        assert call.state is CallState.RINGING
        assert call.type is CallType.ONE_TO_ONE
        assert call.participant_ids() == ["alice", "bob"]
        incoming = emitter.payloads(bob, "incoming_call")
        assert incoming == [
            {
                "callId": call.id,
                "callerId": "alice",
                "caller": make_user("alice").to_payload(),
                "workspaceId": "w1",
                "callType": "1:1",
            }
        ]
        assert emitter.payloads(alice, "call_started")[0]["callId"] == call.id

        await calls.accept_call(bob, call.id)
        assert call.state is CallState.ACTIVE
        assert emitter.payloads(alice, "call_accepted")[0]["acceptedBy"] == "bob"
        assert emitter.payloads(bob, "call_accepted")[0]["acceptedBy"] == "bob"

        await calls.end_call(alice, call.id)
        return alice, bob, call

    alice, bob, call = asyncio.run(_run())
    assert call.state is CallState.ENDED
    assert calls.get(call.id) is None
    for cid in (alice, bob):
        assert emitter.payloads(cid, "call_ended") == [
            {"callId": call.id, "endedBy": "alice", "endedByUser": make_user("alice").to_payload()}
        ]
    assert coordinator.router.subscribers(call_channel(call.id)) == set()
    assert calls.user_active_calls("alice") == []


def test_reject_destroys_the_call(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        call = await calls.start_call(alice, "bob", workspace)
        await calls.reject_call(bob, call.id)
        return alice, call

    alice, call = asyncio.run(_run())
    assert calls.get(call.id) is None
    assert emitter.payloads(alice, "call_rejected")[0]["rejectedBy"] == "bob"


def test_failed_call_actions_change_nothing(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob, carol = _connect(coordinator, "alice", "bob", "carol")
        call = await calls.start_call(alice, "bob", workspace)
        emitter.clear()
        with pytest.raises(AuthorizationDenied):
            await calls.accept_call(carol, call.id)
        with pytest.raises(NotFound):
            await calls.end_call(alice, "no-such-call")
        with pytest.raises(ProtocolMisuse):
            await calls.end_call(alice, "")
        with pytest.raises(ProtocolMisuse):
            await calls.start_call(alice, "alice", workspace)
        with pytest.raises(ProtocolMisuse):
            await calls.start_call(alice, "bob", workspace, call_type="conference")
        return call

    call = asyncio.run(_run())
    assert call.state is CallState.RINGING
    assert emitter.sent == []


def test_repeated_start_rings_once(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        first = await calls.start_call(alice, "bob", workspace)
        second = await calls.start_call(alice, "bob", workspace)
        return alice, bob, first, second

    alice, bob, first, second = asyncio.run(_run())
    assert first is second
    assert calls.active_call_count == 1
    assert len(emitter.payloads(bob, "incoming_call")) == 1
    assert len(emitter.payloads(alice, "call_started")) == 2


def test_accepting_an_active_call_only_acknowledges(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        call = await calls.start_call(alice, "bob", workspace)
        await calls.accept_call(bob, call.id)
        emitter.clear()
        await calls.accept_call(bob, call.id)
        return alice, bob

    alice, bob = asyncio.run(_run())
    assert emitter.events(alice) == []
    assert emitter.events(bob) == ["call_accepted"]


def test_group_call_with_three_joiners(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob, carol = _connect(coordinator, "alice", "bob", "carol")
        call = await calls.join_group_call(alice, workspace)
        assert call.type is CallType.GROUP and call.state is CallState.ACTIVE
        assert emitter.payloads(alice, "joined_group_call") == [
            {"callId": call.id, "participants": ["alice"], "workspaceId": "w1"}
        ]
        assert (await calls.join_group_call(bob, workspace)) is call
        assert (await calls.join_group_call(carol, workspace)) is call
        assert call.participant_ids() == ["alice", "bob", "carol"]
        assert emitter.payloads(carol, "joined_group_call")[0]["participants"] == ["alice", "bob", "carol"]
        assert [p["userId"] for p in emitter.payloads(alice, "user_joined_call")] == ["bob", "carol"]
        assert [p["userId"] for p in emitter.payloads(bob, "user_joined_call")] == ["carol"]
        assert emitter.payloads(carol, "user_joined_call") == []

        assert await calls.leave_group_call(alice, call.id) is call
        assert [p["userId"] for p in emitter.payloads(bob, "user_left_call")] == ["alice"]
        assert emitter.payloads(alice, "left_group_call") == [{"callId": call.id}]
        await calls.leave_group_call(bob, call.id)
        assert await calls.leave_group_call(carol, call.id) is None
        return call

    call = asyncio.run(_run())
    assert call.state is CallState.ENDED
    assert calls.get(call.id) is None
    assert calls.workspace_active_calls("w1") == []


def test_rejoining_a_group_call_is_a_no_op(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        call = await calls.join_group_call(alice, workspace)
        await calls.join_group_call(bob, workspace)
        await calls.join_group_call(bob, workspace)
        return alice, call

    alice, call = asyncio.run(_run())
    assert call.participant_ids() == ["alice", "bob"]
    assert len(emitter.payloads(alice, "user_joined_call")) == 1


def test_group_call_requires_membership(coordinator, workspace):
    async def _run():
        (dave,) = _connect(coordinator, "dave")
        with pytest.raises(AuthorizationDenied):
            await coordinator.calls.join_group_call(dave, workspace)

    asyncio.run(_run())
    assert coordinator.calls.active_call_count == 0


def test_disconnect_leaves_calls_and_notifies_the_rest(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        call = await calls.start_call(alice, "bob", workspace)
        await calls.accept_call(bob, call.id)
        await coordinator.disconnect(bob)
        assert call.participant_ids() == ["alice"]
        assert emitter.payloads(alice, "user_disconnected_from_call") == [
            {"callId": call.id, "userId": "bob", "user": make_user("bob").to_payload()}
        ]
        await coordinator.disconnect(alice)
        return call

    call = asyncio.run(_run())
    assert calls.get(call.id) is None
    assert calls.active_call_count == 0


def test_unanswered_ring_is_cleared_when_the_target_goes_away(coordinator, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        call = await calls.start_call(alice, "bob", workspace)
        await coordinator.disconnect(bob)
        return call

    call = asyncio.run(_run())
    assert call.participant_ids() == ["alice"]


def test_other_tab_closing_does_not_drop_the_call(coordinator, workspace):
    calls = coordinator.calls

    async def _run():
        a1 = coordinator.sessions.register_connection("alice", make_user("alice"))
        a2 = coordinator.sessions.register_connection("alice", make_user("alice"))
        (bob,) = _connect(coordinator, "bob")
        call = await calls.join_group_call(a1, workspace)
        await calls.join_group_call(bob, workspace)
        await coordinator.disconnect(a2)
        assert call.participant_ids() == ["alice", "bob"]
        await coordinator.disconnect(a1)
        return call

    call = asyncio.run(_run())
    assert call.participant_ids() == ["bob"]


def test_join_resuming_after_disconnect_adds_nothing(coordinator, persistence, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        call = await calls.start_call(alice, "bob", workspace)
        await calls.accept_call(bob, call.id)

        gate = persistence.held["get_membership_role"] = asyncio.Event()
        join = asyncio.ensure_future(calls.join_group_call(alice, workspace))
        await _settle()

        async def release(connection_id, event, payload):
            if event == "user_disconnected_from_call":
                gate.set()
                await _settle()

        emitter.on_emit = release
        await coordinator.disconnect(alice)
        with pytest.raises(NotFound):
            await join
        return call

    call = asyncio.run(_run())
    assert not coordinator.sessions.is_connected("alice")
    assert calls.user_active_calls("alice") == []
    assert [c["callId"] for c in calls.workspace_active_calls("w1")] == [call.id]
    assert call.participant_ids() == ["bob"]


def test_leaving_a_ringing_call_tells_the_target(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        call = await calls.start_call(alice, "bob", workspace)
        survivor = await calls.leave_group_call(alice, call.id)
        assert survivor is call
        return bob, call

    bob, call = asyncio.run(_run())
    assert emitter.payloads(bob, "user_left_call") == [
        {"callId": call.id, "userId": "alice", "user": make_user("alice").to_payload()}
    ]
    assert call.participant_ids() == ["bob"]


def test_webrtc_signals_go_to_the_target_user(coordinator, emitter, workspace):
    calls = coordinator.calls

    async def _run():
        alice, b1 = _connect(coordinator, "alice", "bob")
        b2 = coordinator.sessions.register_connection("bob", make_user("bob"))
        await calls.relay_signal(alice, "webrtc_offer", {"targetUserId": "bob", "offer": {"sdp": "x"}, "callId": "c"})
        with pytest.raises(NotFound):
            await calls.relay_signal(alice, "webrtc_answer", {"targetUserId": "carol", "answer": {}})
        with pytest.raises(ProtocolMisuse):
            await calls.relay_signal(alice, "webrtc_ice_candidate", {"candidate": {}})
        return b1, b2

    b1, b2 = asyncio.run(_run())
    expected = {"fromUserId": "alice", "fromUser": make_user("alice").to_payload(), "offer": {"sdp": "x"}, "callId": "c"}
    assert emitter.payloads(b1, "webrtc_offer") == [expected]
    assert emitter.payloads(b2, "webrtc_offer") == [expected]


def test_call_queries(coordinator, workspace):
    calls = coordinator.calls

    async def _run():
        alice, bob, carol = _connect(coordinator, "alice", "bob", "carol")
        one = await calls.start_call(alice, "bob", workspace)
        group = await calls.join_group_call(carol, workspace)
        return one, group

    one, group = asyncio.run(_run())
    assert [c["callId"] for c in calls.user_active_calls("bob")] == [one.id]
    assert {c["callId"] for c in calls.workspace_active_calls("w1")} == {one.id, group.id}
    assert calls.workspace_active_calls("w2") == []
