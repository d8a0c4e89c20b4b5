from __future__ import annotations
import logging
from typing import Any, Dict, Tuple

from realtime import RoomRouter, workspace_channel

logger = logging.getLogger(__name__)

WHITEBOARD_EVENTS: Dict[str, Tuple[str, ...]] = {
    "wb_begin": ("x", "y", "color", "size"),
    "wb_draw": ("x", "y"),
    "wb_line": ("points", "color", "size"),
}


class WhiteboardRelay:
    """Canvas strokes relayed to the rest of a workspace, never echoed back.

    Only connections that joined the workspace channel (which required a
    membership check) can draw on it.
    """

    def __init__(self, router: RoomRouter) -> None:
        self._router = router

    async def relay(self, connection_id: str, event: str, data: Any) -> bool:
        fields = WHITEBOARD_EVENTS.get(event)
        if fields is None or not isinstance(data, dict):
            logger.debug("Dropped malformed %s from %s", event, connection_id)
            return False
        workspace_id = data.get("workspaceId")
        if not workspace_id:
            logger.debug("Dropped %s from %s: no workspaceId", event, connection_id)
            return False
        channel = workspace_channel(workspace_id)
        if not self._router.is_subscribed(connection_id, channel):
            logger.debug("Dropped %s from %s: not in workspace %s", event, connection_id, workspace_id)
            return False
        payload = {name: data.get(name) for name in fields}
        await self._router.broadcast(channel, event, payload, exclude=connection_id)
        return True
