"""Video/voice call sessions and WebRTC signal relay.

State per call::

    1:1    initiating -> ringing -> active -> ended
    group  active -> ended

A session is in the index only while it has at least one participant; the
removal that empties it also destroys it, in the same synchronous step.

Every failed check raises before any state is touched, so the requester gets
a ``call_error`` and nobody else hears anything.
"""
from __future__ import annotations
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from realtime import RoomRouter, call_channel, user_channel
from .errors import AuthorizationDenied, NotFound, ProtocolMisuse
from .membership import MembershipGate
from .sessions import SessionRegistry
from .types import Connection

logger = logging.getLogger(__name__)


class CallType(str, Enum):
    ONE_TO_ONE = "1:1"
    GROUP = "group"


class CallState(str, Enum):
    INITIATING = "initiating"
    RINGING = "ringing"
    ACTIVE = "active"
    ENDED = "ended"


# client event -> key carrying the signal body
SIGNAL_EVENTS: Dict[str, str] = {
    "webrtc_offer": "offer",
    "webrtc_answer": "answer",
    "webrtc_ice_candidate": "candidate",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CallSession:
    id: str
    type: CallType
    workspace_id: str
    initiator_id: str
    started_at: datetime
    state: CallState
    # user id -> joined at; insertion ordered
    participants: Dict[str, datetime] = field(default_factory=dict)

    def participant_ids(self) -> List[str]:
        return list(self.participants)

    def has(self, user_id: str) -> bool:
        return user_id in self.participants

    def to_payload(self) -> dict:
        return {
            "callId": self.id,
            "type": self.type.value,
            "state": self.state.value,
            "workspaceId": self.workspace_id,
            "participants": self.participant_ids(),
            "startedAt": self.started_at.isoformat(),
            "startedBy": self.initiator_id,
        }


class CallSessionManager:
    def __init__(
        self,
        router: RoomRouter,
        sessions: SessionRegistry,
        gate: MembershipGate,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._router = router
        self._sessions = sessions
        self._gate = gate
        self._clock = clock
        self._new_id = id_factory
        self._calls: Dict[str, CallSession] = {}
        self._user_calls: Dict[str, Set[str]] = defaultdict(set)

    # -- index bookkeeping (synchronous) -----------------------------------

    def get(self, call_id: str) -> Optional[CallSession]:
        return self._calls.get(call_id)

    @property
    def active_call_count(self) -> int:
        return len(self._calls)

    def _register(self, call: CallSession) -> None:
        if call.id in self._calls:
            # uuid4 collision; refuse rather than clobber a live call
            raise RuntimeError(f"Duplicate call id {call.id}")
        self._calls[call.id] = call

    def _add_participant(self, call: CallSession, user_id: str) -> None:
        call.participants.setdefault(user_id, self._clock())
        self._user_calls[user_id].add(call.id)

    def _remove_participant(self, call: CallSession, user_id: str) -> bool:
        """Returns True when the removal emptied, and so destroyed, the call."""
        call.participants.pop(user_id, None)
        self._forget_user_call(user_id, call.id)
        if not call.participants:
            self._destroy(call)
            return True
        return False

    def _forget_user_call(self, user_id: str, call_id: str) -> None:
        calls = self._user_calls.get(user_id)
        if calls is not None:
            calls.discard(call_id)
            if not calls:
                self._user_calls.pop(user_id, None)

    def _destroy(self, call: CallSession) -> None:
        call.state = CallState.ENDED
        for user_id in call.participant_ids():
            self._forget_user_call(user_id, call.id)
        self._calls.pop(call.id, None)
        self._router.close_channel(call_channel(call.id))
        logger.info("Call %s cleaned up", call.id)

    def _require_participant(self, call_id: Any, user_id: str) -> CallSession:
        if not call_id:
            raise ProtocolMisuse("callId is required")
        call = self._calls.get(call_id)
        if call is None:
            raise NotFound("Call not found")
        if not call.has(user_id):
            raise AuthorizationDenied("Not a participant of this call")
        return call

    def _pending_between(self, caller_id: str, target_id: str, workspace_id: str) -> Optional[CallSession]:
        for call in self._calls.values():
            if (
                call.initiator_id == caller_id
                and call.workspace_id == workspace_id
                and call.state in (CallState.INITIATING, CallState.RINGING)
                and set(call.participants) == {caller_id, target_id}
            ):
                return call
        return None

    def _open_group_call(self, workspace_id: str) -> Optional[CallSession]:
        candidates = [
            c for c in self._calls.values()
            if c.workspace_id == workspace_id and c.type is CallType.GROUP and c.state is CallState.ACTIVE
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda c: c.started_at)

    async def _notify_participants(self, user_ids: List[str], event: str, payload: dict) -> None:
        for user_id in user_ids:
            await self._router.broadcast(user_channel(user_id), event, payload)

    # -- 1:1 lifecycle -------------------------------------------------------

    async def start_call(
        self,
        connection_id: str,
        target_user_id: str,
        workspace_id: str,
        call_type: str = CallType.ONE_TO_ONE.value,
    ) -> CallSession:
        conn = self._sessions.connection(connection_id)
        caller_id = conn.user_id
        if not target_user_id:
            raise ProtocolMisuse("targetUserId is required")
        if not workspace_id:
            raise ProtocolMisuse("workspaceId is required")
        if target_user_id == caller_id:
            raise ProtocolMisuse("Cannot call yourself")
        try:
            call_type = CallType(call_type)
        except ValueError as exc:
            raise ProtocolMisuse(f"Unknown call type: {call_type!r}") from exc

        denied = "Both users must be in the same workspace"
        await self._gate.check_access(caller_id, workspace_id, message=denied)
        await self._gate.check_access(target_user_id, workspace_id, message=denied)
        self._sessions.connection(connection_id)

        # Check-then-create with no await in between
        existing = self._pending_between(caller_id, target_user_id, workspace_id)
        if existing is not None:
            # Double-click: confirm the pending call again, don't ring twice
            self._router.join(connection_id, call_channel(existing.id))
            await self._router.send(connection_id, "call_started", self._started_payload(existing, target_user_id))
            return existing

        call = CallSession(
            id=self._new_id(),
            type=call_type,
            workspace_id=workspace_id,
            initiator_id=caller_id,
            started_at=self._clock(),
            state=CallState.INITIATING,
        )
        self._register(call)
        self._add_participant(call, caller_id)
        self._add_participant(call, target_user_id)
        self._router.join(connection_id, call_channel(call.id))
        logger.info("Call %s started by %s to %s in workspace %s", call.id, caller_id, target_user_id, workspace_id)

        await self._router.broadcast(
            user_channel(target_user_id),
            "incoming_call",
            {
                "callId": call.id,
                "callerId": caller_id,
                "caller": conn.user.to_payload(),
                "workspaceId": workspace_id,
                "callType": call_type.value,
            },
        )
        # The target may already have answered while we were delivering
        if call.state is CallState.INITIATING:
            call.state = CallState.RINGING
        await self._router.send(connection_id, "call_started", self._started_payload(call, target_user_id))
        return call

    @staticmethod
    def _started_payload(call: CallSession, target_user_id: str) -> dict:
        return {
            "callId": call.id,
            "targetUserId": target_user_id,
            "workspaceId": call.workspace_id,
            "callType": call.type.value,
        }

    async def accept_call(self, connection_id: str, call_id: str) -> CallSession:
        conn = self._sessions.connection(connection_id)
        call = self._require_participant(call_id, conn.user_id)
        self._router.join(connection_id, call_channel(call.id))
        payload = {"callId": call.id, "acceptedBy": conn.user_id, "acceptedByUser": conn.user.to_payload()}
        if call.state is CallState.ACTIVE:
            # Already accepted (second tab, double click): acknowledge only
            await self._router.send(connection_id, "call_accepted", payload)
            return call
        call.state = CallState.ACTIVE
        logger.info("Call %s accepted by %s", call.id, conn.user_id)
        await self._notify_participants(call.participant_ids(), "call_accepted", payload)
        return call

    async def reject_call(self, connection_id: str, call_id: str) -> CallSession:
        conn = self._sessions.connection(connection_id)
        call = self._require_participant(call_id, conn.user_id)
        recipients = call.participant_ids()
        self._destroy(call)
        logger.info("Call %s rejected by %s", call.id, conn.user_id)
        await self._notify_participants(
            recipients,
            "call_rejected",
            {"callId": call.id, "rejectedBy": conn.user_id, "rejectedByUser": conn.user.to_payload()},
        )
        return call

    async def end_call(self, connection_id: str, call_id: str) -> CallSession:
        """End the call for everybody, whatever state it is in."""
        conn = self._sessions.connection(connection_id)
        call = self._require_participant(call_id, conn.user_id)
        recipients = call.participant_ids()
        self._destroy(call)
        logger.info("Call %s ended by %s", call.id, conn.user_id)
        await self._notify_participants(
            recipients,
            "call_ended",
            {"callId": call.id, "endedBy": conn.user_id, "endedByUser": conn.user.to_payload()},
        )
        return call

    # -- group calls ---------------------------------------------------------

    async def join_group_call(self, connection_id: str, workspace_id: str) -> CallSession:
        conn = self._sessions.connection(connection_id)
        user_id = conn.user_id
        if not workspace_id:
            raise ProtocolMisuse("workspaceId is required")
        await self._gate.check_access(user_id, workspace_id, message="Not a workspace member")
        self._sessions.connection(connection_id)

        call = self._open_group_call(workspace_id)
        created = call is None
        if call is None:
            call = CallSession(
                id=self._new_id(),
                type=CallType.GROUP,
                workspace_id=workspace_id,
                initiator_id=user_id,
                started_at=self._clock(),
                state=CallState.ACTIVE,
            )
            self._register(call)
        rejoin = call.has(user_id)
        self._add_participant(call, user_id)
        self._router.join(connection_id, call_channel(call.id))
        logger.info("%s joined group call %s in workspace %s", user_id, call.id, workspace_id)

        if not created and not rejoin:
            await self._router.broadcast(
                call_channel(call.id),
                "user_joined_call",
                {"callId": call.id, "userId": user_id, "user": conn.user.to_payload()},
                exclude=connection_id,
            )
        await self._router.send(
            connection_id,
            "joined_group_call",
            {"callId": call.id, "participants": call.participant_ids(), "workspaceId": workspace_id},
        )
        return call

    async def leave_group_call(self, connection_id: str, call_id: str) -> Optional[CallSession]:
        """Leave a call; returns the call if it survives, None if it was destroyed."""
        conn = self._sessions.connection(connection_id)
        call = self._require_participant(call_id, conn.user_id)
        channel = call_channel(call.id)
        for other in self._sessions.connections_for(conn.user_id):
            self._router.leave(other, channel)
        destroyed = self._remove_participant(call, conn.user_id)
        logger.info("%s left call %s", conn.user_id, call.id)

        if not destroyed:
            # Personal channels: a ringing target is not bound to the call yet
            await self._notify_participants(
                call.participant_ids(),
                "user_left_call",
                {"callId": call.id, "userId": conn.user_id, "user": conn.user.to_payload()},
            )
        await self._router.send(connection_id, "left_group_call", {"callId": call.id})
        return None if destroyed else call

    # -- disconnect ------------------------------------------------------------

    def release_connection(self, conn: Connection) -> List[Tuple[str, List[str]]]:
        """Drop the user from every call this connection was holding, without
        awaiting. Must run while ``conn`` is still registered and subscribed.

        A user leaves a call when none of their other connections is bound to
        it, and either this connection was bound or it was their last
        connection (an unanswered ring has no bound connection). Returns
        ``(call id, remaining participants)`` pairs to announce.
        """
        user_id = conn.user_id
        others = self._sessions.connections_for(user_id) - {conn.id}
        notices = []
        for call_id in list(self._user_calls.get(user_id, ())):
            call = self._calls.get(call_id)
            if call is None:
                continue
            channel = call_channel(call_id)
            if self._router.any_subscribed(others, channel):
                continue
            if others and not self._router.is_subscribed(conn.id, channel):
                continue
            self._router.leave(conn.id, channel)
            remaining = [p for p in call.participant_ids() if p != user_id]
            self._remove_participant(call, user_id)
            notices.append((call_id, remaining))
            logger.info("%s dropped from call %s on disconnect", user_id, call_id)
        return notices

    async def announce_departure(self, conn: Connection, notices: List[Tuple[str, List[str]]]) -> None:
        for call_id, remaining in notices:
            await self._notify_participants(
                remaining,
                "user_disconnected_from_call",
                {"callId": call_id, "userId": conn.user_id, "user": conn.user.to_payload()},
            )

    # -- signaling -------------------------------------------------------------

    async def relay_signal(self, connection_id: str, event: str, data: Any) -> None:
        """Forward an offer/answer/ICE candidate to the target user's channel.

        Pure relay: the accept/join flow is the authorization boundary.
        """
        key = SIGNAL_EVENTS.get(event)
        if key is None:
            raise ProtocolMisuse(f"Unknown signal {event!r}")
        conn = self._sessions.connection(connection_id)
        if not isinstance(data, dict) or not data.get("targetUserId"):
            raise ProtocolMisuse("targetUserId is required")
        target_user_id = data["targetUserId"]
        if not self._sessions.is_connected(target_user_id):
            raise NotFound("Target user is not connected")
        await self._router.broadcast(
            user_channel(target_user_id),
            event,
            {
                "fromUserId": conn.user_id,
                "fromUser": conn.user.to_payload(),
                key: data.get(key),
                "callId": data.get("callId"),
            },
        )

    # -- queries ---------------------------------------------------------------

    def user_active_calls(self, user_id: str) -> List[dict]:
        return [
            self._calls[call_id].to_payload()
            for call_id in sorted(self._user_calls.get(user_id, ()))
            if call_id in self._calls
        ]

    def workspace_active_calls(self, workspace_id: str) -> List[dict]:
        return [c.to_payload() for c in self._calls.values() if c.workspace_id == workspace_id]
