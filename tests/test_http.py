import asyncio

import pytest

from endpoints.realtime_ws import get_coordinator
from factories import seed_workspace
from fakes import InMemoryPersistence, RecordingEmitter, make_user
from security import create_access_token
from services.coordinator import Coordinator


def _auth(user_id):
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


@pytest.fixture()
def live(client):
    """A coordinator with alice and bob online in w1 and a group call running."""
    persistence = InMemoryPersistence()
    for user_id in ("alice", "bob"):
        persistence.add_member("w1", user_id)
    persistence.permissions[("d1", "alice")] = "admin"
    persistence.permissions[("d1", "bob")] = "read"
    coord = Coordinator(persistence, RecordingEmitter())

    async def _run():
        for user_id in ("alice", "bob"):
            cid = await coord.connect(make_user(user_id))
            await coord.dispatch(cid, "join_workspaces", ["w1"])
            await coord.dispatch(cid, "document_join", "d1")
        await coord.dispatch(cid, "join_group_call", "w1")
        await coord.shutdown()

    asyncio.run(_run())
    from main import app
    app.dependency_overrides[get_coordinator] = lambda: coord
    yield coord
    app.dependency_overrides.pop(get_coordinator, None)


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["components"]["db"] == {"ok": True}
    assert "connections" in body["components"]["realtime"]


def test_realtime_endpoints_require_a_token(client):
    assert client.get("/api/v1/realtime/calls/me").status_code == 401
    bad = {"Authorization": "Bearer nope"}
    assert client.get("/api/v1/realtime/workspaces/w1/online", headers=bad).status_code == 401


def test_online_is_gated_by_membership(client, db):
    seed_workspace(db)
    ok = client.get("/api/v1/realtime/workspaces/w1/online", headers=_auth("bob"))
    assert ok.status_code == 200
    assert ok.json()["workspaceId"] == "w1"
    denied = client.get("/api/v1/realtime/workspaces/w1/online", headers=_auth("carol"))
    assert denied.status_code == 403


def test_live_state_is_reported(client, live):
    online = client.get("/api/v1/realtime/workspaces/w1/online", headers=_auth("alice")).json()
    assert online["online"] == ["alice", "bob"]
    assert online["presence"]["bob"]["status"] == "online"

    calls = client.get("/api/v1/realtime/workspaces/w1/calls", headers=_auth("alice")).json()["calls"]
    assert len(calls) == 1 and calls[0]["participants"] == ["bob"]
    assert client.get("/api/v1/realtime/calls/me", headers=_auth("bob")).json()["calls"] == calls
    assert client.get("/api/v1/realtime/calls/me", headers=_auth("alice")).json()["calls"] == []

    collaborators = client.get("/api/v1/realtime/documents/d1/collaborators", headers=_auth("bob"))
    assert collaborators.json() == {"documentId": "d1", "collaborators": ["alice", "bob"]}
    assert client.get("/api/v1/realtime/documents/d1/collaborators", headers=_auth("eve")).status_code == 403
    assert client.get("/api/v1/realtime/workspaces/w1/calls", headers=_auth("eve")).status_code == 403
