"""Retention sweeper - reclaims expired games, players and old snapshots.

Order matters: games go first so the players they referenced can become
orphans in the same run; history is trimmed last.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from relay.core.config import settings as default_settings
from relay.storage.backend import SaveStoreBackend
from relay.storage.records import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    deleted_games: int = 0
    deleted_players: int = 0
    deleted_snapshots: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionSweeper:
    """Deletes in batches of batch_size, one short transaction per batch."""

    def __init__(
        self,
        backend: SaveStoreBackend,
        stale_days: Optional[int] = None,
        abandon_after_hours: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self._backend = backend
        self.stale_after = timedelta(
            days=stale_days if stale_days is not None else default_settings.RETENTION_STALE_DAYS
        )
        self.abandon_after = timedelta(
            hours=abandon_after_hours if abandon_after_hours is not None
            else default_settings.RETENTION_ABANDON_AFTER_HOURS
        )
        self.batch_size = max(1, batch_size or default_settings.SWEEP_BATCH_SIZE)

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Run one retention pass. Safe to repeat: a second run finds nothing."""
        now = now or utcnow()
        stale_before = now - self.stale_after
        abandoned_before = now - self.abandon_after
        started = time.monotonic()

        result = SweepResult()
        result.deleted_games = await self._drain(
            lambda limit: self._backend.delete_expired_games(stale_before, abandoned_before, limit)
        )
        result.deleted_players = await self._drain(
            lambda limit: self._backend.delete_orphan_players(stale_before, limit)
        )
        result.deleted_snapshots = await self._drain(self._backend.trim_snapshot_history)

        logger.info(
            f"Sweep finished in {time.monotonic() - started:.2f}s: "
            f"{result.deleted_games} games, {result.deleted_players} players, "
            f"{result.deleted_snapshots} snapshots removed"
        )
        return result

    async def _drain(self, delete_batch: Callable[[int], Awaitable[int]]) -> int:
        total = 0
        while True:
            deleted = await delete_batch(self.batch_size)
            total += deleted
            if deleted < self.batch_size:
                return total

    async def run_periodically(self, interval_seconds: int) -> None:
        """Sweep every interval_seconds until cancelled."""
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in retention sweep task: {e}", exc_info=True)
                await asyncio.sleep(60)  # Wait 1 minute before retry
