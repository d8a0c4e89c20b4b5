"""Socket.IO transport and read-only realtime introspection.

Connections authenticate once at handshake time (token in ``?token=``,
``auth: {token}`` or an ``Authorization: Bearer`` header); every later event
is forwarded to the process-wide ``Coordinator``.
"""
import logging
from typing import Any
from urllib.parse import parse_qs

import socketio
from fastapi import APIRouter, Depends, HTTPException
from socketio.exceptions import ConnectionRefusedError

from config import settings
from database import SessionLocal
from security import get_current_user_id, verify_token
from services.coordinator import Coordinator
from services.errors import AuthenticationFailure, AuthorizationDenied, NotFound, RealtimeError
from services.sql_persistence import SqlPersistence
from services.types import UserRecord

logger = logging.getLogger(__name__)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.cors_origins(),
    logger=False,
    engineio_logger=False,
)


class SocketIOEmitter:
    def __init__(self, server: socketio.AsyncServer):
        self._server = server

    async def emit(self, connection_id: str, event: str, payload: Any) -> None:
        await self._server.emit(event, payload, to=connection_id)


coordinator = Coordinator(
    SqlPersistence(SessionLocal),
    SocketIOEmitter(sio),
    snapshot_every=settings.DOCUMENT_SNAPSHOT_EVERY,
    snapshot_interval=settings.DOCUMENT_SNAPSHOT_INTERVAL_SECONDS,
    max_update_bytes=settings.MAX_DOCUMENT_UPDATE_BYTES,
)


def get_coordinator() -> Coordinator:
    return coordinator


def _extract_token(environ: dict[str, Any], auth: Any | None) -> str | None:
    scope: Any = environ
    if isinstance(environ, dict) and isinstance(environ.get("asgi.scope"), dict):
        scope = environ["asgi.scope"]

    query_string: str | bytes = ""
    if isinstance(environ, dict) and environ.get("QUERY_STRING"):
        query_string = environ["QUERY_STRING"]
    elif isinstance(scope, dict):
        query_string = scope.get("query_string", b"")
    if isinstance(query_string, (bytes, bytearray)):
        query_string = query_string.decode(errors="ignore")

    token = parse_qs(str(query_string)).get("token", [None])[0]
    if token:
        return token

    if isinstance(auth, dict) and isinstance(auth.get("token"), str) and auth["token"]:
        return auth["token"]

    header = environ.get("HTTP_AUTHORIZATION", "") if isinstance(environ, dict) else ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


async def authenticate(environ: dict[str, Any], auth: Any | None) -> UserRecord:
    user_id = verify_token(_extract_token(environ, auth))
    user = await coordinator.persistence.get_profile(user_id)
    if user is None:
        raise AuthenticationFailure("User profile not found")
    return user


@sio.event
async def connect(sid: str, environ: dict[str, Any], auth: Any | None = None):
    try:
        user = await authenticate(environ, auth)
    except AuthenticationFailure as exc:
        logger.info("Socket.IO connection %s refused: %s", sid, exc.message)
        raise ConnectionRefusedError(exc.code) from exc
    except Exception as exc:
        logger.exception("Socket.IO connect error")
        raise ConnectionRefusedError("server_error") from exc
    await coordinator.connect(user, sid)


@sio.event
async def disconnect(sid: str, reason: Any = None):
    await coordinator.disconnect(sid)


@sio.on("*")
async def any_event(event: str, sid: str, data: Any = None):
    await coordinator.dispatch(sid, event, data)


# -- HTTP introspection -------------------------------------------------------

router = APIRouter(prefix="/realtime")


def _http_error(exc: RealtimeError) -> HTTPException:
    if isinstance(exc, AuthorizationDenied):
        return HTTPException(status_code=403, detail=exc.message)
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=exc.message)
    return HTTPException(status_code=503, detail=exc.message)


@router.get("/workspaces/{workspace_id}/online")
async def workspace_online(
    workspace_id: str,
    user_id: str = Depends(get_current_user_id),
    coord: Coordinator = Depends(get_coordinator),
):
    try:
        await coord.gate.check_access(user_id, workspace_id)
    except RealtimeError as exc:
        raise _http_error(exc) from exc
    presence = coord.sessions.workspace_presence(workspace_id)
    return {
        "workspaceId": workspace_id,
        "online": sorted(coord.sessions.list_online(workspace_id)),
        "presence": {
            uid: {"status": record.status.value, "lastSeen": record.last_seen.isoformat()}
            for uid, record in presence.items()
        },
    }


@router.get("/workspaces/{workspace_id}/calls")
async def workspace_calls(
    workspace_id: str,
    user_id: str = Depends(get_current_user_id),
    coord: Coordinator = Depends(get_coordinator),
):
    try:
        await coord.gate.check_access(user_id, workspace_id)
    except RealtimeError as exc:
        raise _http_error(exc) from exc
    return {"workspaceId": workspace_id, "calls": coord.calls.workspace_active_calls(workspace_id)}


@router.get("/calls/me")
async def my_calls(
    user_id: str = Depends(get_current_user_id),
    coord: Coordinator = Depends(get_coordinator),
):
    return {"calls": coord.calls.user_active_calls(user_id)}


@router.get("/documents/{document_id}/collaborators")
async def document_collaborators(
    document_id: str,
    user_id: str = Depends(get_current_user_id),
    coord: Coordinator = Depends(get_coordinator),
):
    try:
        permission = await coord.persistence.get_document_permission(document_id, user_id)
    except RealtimeError as exc:
        raise _http_error(exc) from exc
    if permission is None:
        raise HTTPException(status_code=403, detail="No access to this document")
    return {"documentId": document_id, "collaborators": coord.documents.collaborators(document_id)}
