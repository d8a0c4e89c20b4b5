from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Set

from .errors import RealtimeError

logger = logging.getLogger(__name__)


class BestEffortWriter:
    """Fire-and-forget persistence writes.

    Callers never wait on, or hear about, the outcome. There is no retry: a
    failed write is logged and dropped, and the next write of the same row
    supersedes it anyway (presence, snapshots).
    """

    def __init__(self) -> None:
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, write: Awaitable[None], description: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(write, description))
        # Keep a strong reference until done
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, write: Awaitable[None], description: str) -> None:
        try:
            await write
        except RealtimeError as exc:
            logger.warning("Best-effort write failed (%s): %s", description, exc)
        except Exception:
            logger.exception("Best-effort write crashed (%s)", description)

    async def drain(self) -> None:
        """Wait for every write submitted so far (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
