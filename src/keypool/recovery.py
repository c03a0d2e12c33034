# src/keypool/recovery.py

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from .config import get_sweep_interval
from .models import KeyPolicy, KeyRecord, current_time_ms
from .usage_tracker import try_recover

lib_logger = logging.getLogger("keypool")


def sweep(
    pool: Sequence[KeyRecord],
    policy: Optional[KeyPolicy] = None,
    now: Optional[int] = None,
) -> List[KeyRecord]:
    """
    Applies cooldown recovery to every key in the pool.

    Returns the pool unchanged (as a new list) when auto recovery is off.
    Keys that do not recover are returned as the same objects, so callers
    can detect changes with an identity check.
    """
    policy = policy or KeyPolicy()
    if not policy.auto_recovery_enabled:
        return list(pool)
    now = current_time_ms() if now is None else now
    return [try_recover(key, policy, now) for key in pool]


class BackgroundSweeper:
    """
    A background task that periodically sweeps an externally owned pool so
    demoted keys come back without waiting for a selection.

    The pool itself is never held here: each cycle loads a fresh snapshot,
    sweeps it, and saves it only when at least one key recovered.
    """

    def __init__(
        self,
        load_pool: Callable[[], Awaitable[Sequence[KeyRecord]]],
        save_pool: Callable[[List[KeyRecord]], Awaitable[None]],
        policy_provider: Callable[[], KeyPolicy],
        interval: Optional[int] = None,
    ):
        self._load_pool = load_pool
        self._save_pool = save_pool
        self._policy_provider = policy_provider
        self._interval = interval if interval is not None else get_sweep_interval()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Starts the background sweep task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            lib_logger.info(
                f"Background recovery sweep started. Check interval: {self._interval} seconds."
            )

    async def stop(self):
        """Stops the background sweep task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            lib_logger.info("Background recovery sweep stopped.")

    async def run_once(self) -> int:
        """Runs a single sweep cycle and returns the number of recovered keys."""
        policy = self._policy_provider()
        if not policy.auto_recovery_enabled:
            return 0
        pool = list(await self._load_pool())
        swept = sweep(pool, policy)
        recovered = sum(1 for old, new in zip(pool, swept) if old is not new)
        if recovered:
            await self._save_pool(swept)
            lib_logger.info(f"Recovery sweep restored {recovered} key(s).")
        return recovered

    async def _run(self):
        """The main loop for the background task."""
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                lib_logger.error(f"Unexpected error in recovery sweep loop: {e}")
                await asyncio.sleep(self._interval)
