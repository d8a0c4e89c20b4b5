"""Channel subscription index and fan-out.

In-process only: the index lives in this process and delivery goes through an
``Emitter`` (the Socket.IO server in production, a recorder in tests). For
multi-process scale-out the emitter would need a shared pub/sub behind it.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, Optional, Protocol, Set

logger = logging.getLogger(__name__)


class Emitter(Protocol):
    async def emit(self, connection_id: str, event: str, payload: Any) -> None: ...


def room_channel(room_id: str) -> str:
    return f"room:{room_id}"


def board_channel(board_id: str) -> str:
    return f"board:{board_id}"


def document_channel(document_id: str) -> str:
    return f"document:{document_id}"


def workspace_channel(workspace_id: str) -> str:
    return f"workspace:{workspace_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def call_channel(call_id: str) -> str:
    return f"call:{call_id}"


def channel_id(channel: str) -> str:
    """``"workspace:42"`` -> ``"42"``."""
    return channel.split(":", 1)[1]


class RoomRouter:
    """Bidirectional channel <-> connection index.

    ``join``, ``leave``, ``leave_all`` and ``close_channel`` are the only
    mutators, so both directions always agree. Mutations are synchronous; only
    delivery awaits.
    """

    def __init__(self, emitter: Emitter) -> None:
        self._emitter = emitter
        self._subscribers: Dict[str, Set[str]] = defaultdict(set)
        self._channels: Dict[str, Set[str]] = defaultdict(set)

    def join(self, connection_id: str, channel: str) -> bool:
        """Subscribe; returns False when already subscribed."""
        if connection_id in self._subscribers.get(channel, ()):
            return False
        self._subscribers[channel].add(connection_id)
        self._channels[connection_id].add(channel)
        return True

    def leave(self, connection_id: str, channel: str) -> bool:
        conns = self._subscribers.get(channel)
        if not conns or connection_id not in conns:
            return False
        conns.discard(connection_id)
        if not conns:
            self._subscribers.pop(channel, None)
        chans = self._channels.get(connection_id)
        if chans is not None:
            chans.discard(channel)
            if not chans:
                self._channels.pop(connection_id, None)
        return True

    def leave_all(self, connection_id: str) -> Set[str]:
        """Drop every subscription of a connection; returns the channels it had."""
        chans = self._channels.pop(connection_id, set())
        for channel in chans:
            conns = self._subscribers.get(channel)
            if conns is not None:
                conns.discard(connection_id)
                if not conns:
                    self._subscribers.pop(channel, None)
        return chans

    def close_channel(self, channel: str) -> Set[str]:
        """Unsubscribe everybody from ``channel``; returns the former subscribers."""
        conns = self._subscribers.pop(channel, set())
        for connection_id in conns:
            chans = self._channels.get(connection_id)
            if chans is not None:
                chans.discard(channel)
                if not chans:
                    self._channels.pop(connection_id, None)
        return conns

    def subscribers(self, channel: str) -> Set[str]:
        return set(self._subscribers.get(channel, ()))

    def channels_of(self, connection_id: str, prefix: Optional[str] = None) -> Set[str]:
        chans = self._channels.get(connection_id, ())
        if prefix is None:
            return set(chans)
        return {c for c in chans if c.startswith(prefix)}

    def is_subscribed(self, connection_id: str, channel: str) -> bool:
        return connection_id in self._subscribers.get(channel, ())

    def any_subscribed(self, connection_ids: Iterable[str], channel: str) -> bool:
        conns = self._subscribers.get(channel, ())
        return any(c in conns for c in connection_ids)

    def channel_count(self) -> int:
        return len(self._subscribers)

    async def send(self, connection_id: str, event: str, payload: Any) -> bool:
        try:
            await self._emitter.emit(connection_id, event, payload)
        except Exception:
            logger.warning("Delivery of %s to %s failed", event, connection_id, exc_info=True)
            return False
        return True

    async def broadcast(
        self,
        channel: str,
        event: str,
        payload: Any,
        exclude: Optional[str] = None,
    ) -> int:
        """Deliver to every connection subscribed at call time, except ``exclude``.

        Returns the number of successful deliveries. One dead connection does
        not stop the fan-out; the transport reports its closure separately.
        """
        # Snapshot so joins/leaves during delivery don't affect this event
        targets = [c for c in self._subscribers.get(channel, ()) if c != exclude]
        delivered = 0
        for connection_id in targets:
            if await self.send(connection_id, event, payload):
                delivered += 1
        return delivered
