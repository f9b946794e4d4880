"""Deferred and shutdown-triggered teardown of transfer sessions.

The scheduler does not know what cleanup means; it is given an async
callable (``TransferEngine.cleanup``) and decides *when* to run it:

  * ``schedule`` arms a one-shot timer for a transferId (used when an upload
    completes). At most one timer is pending per transferId.
  * ``shutdown`` cancels all pending timers and runs cleanup immediately for
    every transferId handed to it (used on process shutdown).

Each timer is an ``asyncio.Task`` whose handle is kept until it fires, so a
pending cleanup can be cancelled even though the protocol never does.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

CleanupFn = Callable[[str], Awaitable[None]]


class CleanupScheduler:
    """One-shot cleanup timers keyed by transferId."""

    def __init__(self, cleanup: CleanupFn, delay_seconds: float = 3600.0) -> None:
        self._cleanup = cleanup
        self._delay = delay_seconds
        # transfer_id -> pending timer task
        self._tasks: Dict[str, asyncio.Task] = {}  # type: ignore[type-arg]

    @property
    def delay_seconds(self) -> float:
        return self._delay

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def schedule(self, transfer_id: str, delay_seconds: Optional[float] = None) -> bool:
        """Arm a cleanup timer for *transfer_id*.

        Returns:
            True if a new timer was armed, False if one was already pending.
        """
        if self.is_scheduled(transfer_id):
            logger.debug("Cleanup for %s already scheduled", transfer_id)
            return False

        delay = self._delay if delay_seconds is None else delay_seconds
        self._tasks[transfer_id] = asyncio.create_task(
            self._run_later(transfer_id, delay),
            name=f"cleanup-{transfer_id}",
        )
        logger.info("Cleanup for %s scheduled in %ss", transfer_id, delay)
        return True

    def is_scheduled(self, transfer_id: str) -> bool:
        task = self._tasks.get(transfer_id)
        return task is not None and not task.done()

    def cancel(self, transfer_id: str) -> bool:
        """Withdraw a pending timer (no-op if none is pending)."""
        task = self._tasks.pop(transfer_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("Cleanup for %s cancelled", transfer_id)
        return True

    def pending(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def _run_later(self, transfer_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._tasks.pop(transfer_id, None)
        try:
            await self._cleanup(transfer_id)
        except Exception:
            logger.exception("Scheduled cleanup failed for %s", transfer_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self, transfer_ids: Iterable[str]) -> None:
        """Cancel pending timers, then clean up every given transfer now."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d pending cleanup timers", len(tasks))

        for transfer_id in list(transfer_ids):
            try:
                await self._cleanup(transfer_id)
            except Exception:
                logger.exception("Shutdown cleanup failed for %s", transfer_id)
