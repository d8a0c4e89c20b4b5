import asyncio

import pytest

from fakes import make_user
from services.coordinator import Coordinator
from services.documents import decode_snapshot, encode_snapshot
from services.errors import AuthorizationDenied, NotFound, ProtocolMisuse


@pytest.fixture()
def document(persistence):
    persistence.permissions[("d1", "alice")] = "write"
    persistence.permissions[("d1", "bob")] = "read"
    persistence.permissions[("d1", "carol")] = "admin"
    return "d1"


def _connect(coordinator, *user_ids):
    return [coordinator.sessions.register_connection(u, make_user(u)) for u in user_ids]


def test_snapshot_framing():
    updates = [b"\x01\x02", b"", b"x" * 300]
    assert decode_snapshot(encode_snapshot(updates)) == updates
    assert decode_snapshot(b"") == []
    with pytest.raises(ValueError):
        decode_snapshot(b"\x00\x00\x00\x05ab")
    with pytest.raises(ValueError):
        decode_snapshot(b"\x00\x01")


def test_join_requires_a_collaborator_row(coordinator, emitter, document):
    async def _run():
        (dave,) = _connect(coordinator, "dave")
        with pytest.raises(AuthorizationDenied, match="No access to this document"):
            await coordinator.documents.join_document(dave, document)
        return dave

    dave = asyncio.run(_run())
    assert emitter.events(dave) == []
    assert coordinator.documents.collaborators(document) == []


def test_join_syncs_the_stored_snapshot(coordinator, persistence, emitter, document):
    persistence.snapshots[document] = encode_snapshot([b"seed-1", b"seed-2"])

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        await coordinator.documents.join_document(alice, document)
        await coordinator.documents.join_document(bob, document)
        return alice, bob

    alice, bob = asyncio.run(_run())
    assert emitter.payloads(alice, "document_joined") == [{"documentId": "d1", "permission": "write"}]
    assert emitter.payloads(bob, "document_joined") == [{"documentId": "d1", "permission": "read"}]
    assert emitter.payloads(alice, "document_sync") == [
        {"documentId": "d1", "updates": [b"seed-1", b"seed-2"], "version": 2}
    ]
    assert [p["userId"] for p in emitter.payloads(alice, "collaborator_joined")] == ["bob"]
    assert emitter.payloads(bob, "collaborator_joined") == []
    assert coordinator.documents.collaborators(document) == ["alice", "bob"]
    assert coordinator.documents.has_access(document, "bob")
    assert not coordinator.documents.has_access(document, "carol")


def test_unframed_snapshot_is_seeded_whole(coordinator, persistence, emitter, document):
    persistence.snapshots[document] = b"\xff\xff"

    async def _run():
        (alice,) = _connect(coordinator, "alice")
        await coordinator.documents.join_document(alice, document)
        return alice

    alice = asyncio.run(_run())
    assert emitter.payloads(alice, "document_sync")[0]["updates"] == [b"\xff\xff"]


def test_concurrent_first_joins_share_one_load(coordinator, persistence, emitter, document):
    persistence.snapshots[document] = encode_snapshot([b"seed"])

    async def _run():
        alice, carol = _connect(coordinator, "alice", "carol")
        await asyncio.gather(
            coordinator.documents.join_document(alice, document),
            coordinator.documents.join_document(carol, document),
        )
        return alice, carol

    alice, carol = asyncio.run(_run())
    assert persistence.calls["load_document_snapshot"] == 1
    for cid in (alice, carol):
        assert emitter.payloads(cid, "document_sync")[0]["updates"] == [b"seed"]


def test_updates_are_relayed_in_order_to_the_others(coordinator, emitter, document):
    docs = coordinator.documents

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        await docs.join_document(alice, document)
        await docs.join_document(bob, document)
        seqs = [await docs.relay_update(alice, bytes([i])) for i in range(3)]
        return alice, bob, seqs

    alice, bob, seqs = asyncio.run(_run())
    assert seqs == [0, 1, 2]
    updates = emitter.payloads(bob, "document_update")
    assert [u["update"] for u in updates] == [b"\x00", b"\x01", b"\x02"]
    assert [u["seq"] for u in updates] == [0, 1, 2]
    assert updates[0]["fromUserId"] == "alice"
    assert emitter.payloads(alice, "document_update") == []
    assert docs.live_document(document).version == 3


def test_eleven_updates_write_exactly_one_snapshot(coordinator, persistence, document):
    docs = coordinator.documents

    async def _run():
        (alice,) = _connect(coordinator, "alice")
        await docs.join_document(alice, document)
        for i in range(11):
            await docs.relay_update(alice, b"u%d" % i, document)
        await coordinator.writer.drain()

    asyncio.run(_run())
    assert len(persistence.snapshot_writes) == 1
    document_id, content, user_id = persistence.snapshot_writes[0]
    assert (document_id, user_id) == ("d1", "alice")
    assert decode_snapshot(content) == [b"u%d" % i for i in range(10)]


def test_snapshot_after_thirty_seconds(coordinator, persistence, monotonic, document):
    docs = coordinator.documents

    async def _run():
        (alice,) = _connect(coordinator, "alice")
        await docs.join_document(alice, document)
        await docs.relay_update(alice, b"a")
        monotonic.advance(29)
        await docs.relay_update(alice, b"b")
        monotonic.advance(2)
        await docs.relay_update(alice, b"c")
        await docs.relay_update(alice, b"d")
        await coordinator.writer.drain()

    asyncio.run(_run())
    assert [decode_snapshot(c) for _, c, _ in persistence.snapshot_writes] == [[b"a", b"b", b"c"]]


def test_read_only_collaborator_cannot_edit(coordinator, emitter, document):
    docs = coordinator.documents

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        await docs.join_document(alice, document)
        await docs.join_document(bob, document)
        with pytest.raises(AuthorizationDenied):
            await docs.relay_update(bob, b"nope")
        return alice

    alice = asyncio.run(_run())
    assert emitter.payloads(alice, "document_update") == []
    assert docs.live_document(document).version == 0


def test_update_validation(persistence, emitter, monotonic, document):
    coordinator = Coordinator(persistence, emitter, max_update_bytes=4, monotonic=monotonic)
    docs = coordinator.documents
    persistence.permissions[("d2", "alice")] = "write"

    async def _run():
        (alice,) = _connect(coordinator, "alice")
        with pytest.raises(ProtocolMisuse):
            await docs.relay_update(alice, b"x")
        await docs.join_document(alice, document)
        with pytest.raises(ProtocolMisuse, match="too large"):
            await docs.relay_update(alice, b"12345")
        with pytest.raises(ProtocolMisuse):
            await docs.relay_update(alice, b"")
        with pytest.raises(ProtocolMisuse):
            await docs.relay_update(alice, "text")
        await docs.join_document(alice, "d2")
        with pytest.raises(ProtocolMisuse, match="documentId"):
            await docs.relay_update(alice, b"1234")
        assert await docs.relay_update(alice, b"1234", "d2") == 0

    asyncio.run(_run())


def test_last_editor_leaving_flushes_and_evicts(coordinator, persistence, emitter, document):
    docs = coordinator.documents

    async def _run():
        alice, carol = _connect(coordinator, "alice", "carol")
        await docs.join_document(alice, document)
        await docs.join_document(carol, document)
        await docs.relay_update(alice, b"one")
        await docs.leave_document(alice, document)
        assert docs.live_document(document) is not None
        await docs.leave_document(carol, document)
        await coordinator.writer.drain()
        return alice, carol

    alice, carol = asyncio.run(_run())
    assert [p["userId"] for p in emitter.payloads(carol, "collaborator_left")] == ["alice"]
    assert emitter.payloads(alice, "document_left") == [{"documentId": "d1"}]
    assert docs.live_document(document) is None
    assert len(persistence.snapshot_writes) == 1
    _, content, user_id = persistence.snapshot_writes[0]
    assert decode_snapshot(content) == [b"one"] and user_id == "carol"


def test_clean_document_is_evicted_without_a_write(coordinator, persistence, document):
    async def _run():
        (alice,) = _connect(coordinator, "alice")
        await coordinator.documents.join_document(alice, document)
        await coordinator.disconnect(alice)
        await coordinator.writer.drain()

    asyncio.run(_run())
    assert persistence.snapshot_writes == []
    assert coordinator.documents.live_document(document) is None


def test_disconnect_releases_document_sessions(coordinator, persistence, emitter, document):
    docs = coordinator.documents

    async def _run():
        alice, carol = _connect(coordinator, "alice", "carol")
        await docs.join_document(alice, document)
        await docs.join_document(carol, document)
        await docs.relay_update(carol, b"edit")
        await coordinator.disconnect(carol)
        await coordinator.disconnect(alice)
        await coordinator.writer.drain()
        return alice

    alice = asyncio.run(_run())
    assert docs.collaborators(document) == []
    assert [p["userId"] for p in emitter.payloads(alice, "collaborator_left")] == ["carol"]
    assert [decode_snapshot(c) for _, c, _ in persistence.snapshot_writes] == [[b"edit"]]


def test_join_closed_during_hydration_keeps_nothing(coordinator, persistence, emitter, document):
    docs = coordinator.documents
    persistence.snapshots[document] = encode_snapshot([b"seed"])

    async def _run():
        (alice,) = _connect(coordinator, "alice")
        loaded = persistence.held["load_document_snapshot"] = asyncio.Event()
        join = asyncio.ensure_future(docs.join_document(alice, document))
        for _ in range(5):
            await asyncio.sleep(0)
        await coordinator.disconnect(alice)
        loaded.set()
        with pytest.raises(NotFound):
            await join
        return alice

    alice = asyncio.run(_run())
    assert docs.live_document(document) is None
    assert docs.edit_session(alice, document) is None
    assert docs.collaborators(document) == []
    assert emitter.payloads(alice, "document_sync") == []


def test_failed_snapshot_never_blocks_the_relay(coordinator, persistence, emitter, document, caplog):
    persistence.failing.add("save_document_snapshot")
    docs = coordinator.documents

    async def _run():
        alice, bob = _connect(coordinator, "alice", "bob")
        await docs.join_document(alice, document)
        await docs.join_document(bob, document)
        for i in range(12):
            await docs.relay_update(alice, bytes([i + 1]))
        await coordinator.writer.drain()
        return bob

    bob = asyncio.run(_run())
    assert len(emitter.payloads(bob, "document_update")) == 12
    assert persistence.snapshot_writes == []
    assert "Best-effort write failed" in caplog.text
