"""In-memory storage backend.

Keeps players, games and snapshot history in Python dicts. Records are
copied on the way in and out so callers never share state with the store,
matching the behavior of the serialized backends.
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import AsyncIterator, Optional

from relay.schemas.enums import SnapshotKind
from relay.storage.records import (
    GameRecord, PlayerRecord, SnapshotRecord, StoreStats, as_utc,
)


def _copy_game(game: GameRecord) -> GameRecord:
    return replace(game, players=list(game.players))


class _MemoryTransaction:
    """Stages writes and applies them only when the transaction commits."""

    def __init__(self, backend: "InMemoryBackend") -> None:
        self._backend = backend
        self._games: dict[str, GameRecord] = {}
        self._snapshots: list[SnapshotRecord] = []

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        if game_id in self._games:
            return _copy_game(self._games[game_id])
        return await self._backend.get_game(game_id)

    async def save_game(self, game: GameRecord) -> None:
        self._games[game.game_id] = _copy_game(game)

    async def add_snapshot(self, snapshot: SnapshotRecord) -> None:
        self._snapshots.append(replace(snapshot))

    def _apply(self) -> None:
        backend = self._backend
        for game_id, game in self._games.items():
            backend._games[game_id] = game
        for snapshot in self._snapshots:
            snapshot.id = next(backend._ids)
            key = (snapshot.game_id, SnapshotKind(snapshot.kind))
            backend._snapshots.setdefault(key, []).append(snapshot)


class InMemoryBackend:
    """Dict-based storage for tests and single-process development.

    A store-wide asyncio.Lock serializes write transactions and retention
    batches; reads are lock-free and only ever observe committed state.
    """

    def __init__(self) -> None:
        self._players: dict[str, PlayerRecord] = {}
        self._games: dict[str, GameRecord] = {}
        self._snapshots: dict[tuple[str, SnapshotKind], list[SnapshotRecord]] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    # --- Players ---

    async def get_player(self, player_id: str) -> Optional[PlayerRecord]:
        player = self._players.get(player_id)
        return replace(player) if player else None

    async def save_player(self, player: PlayerRecord) -> None:
        self._players[player.player_id] = replace(player)

    async def touch_player(self, player_id: str, ip: Optional[str], at: datetime) -> None:
        player = self._players.get(player_id)
        if player:
            player.updated_at = at
            player.update_ip = ip

    async def list_players(self) -> list[PlayerRecord]:
        players = sorted(self._players.values(), key=lambda p: as_utc(p.created_at), reverse=True)
        return [replace(p) for p in players]

    async def update_player_info(self, player_id: str, whitelisted: bool, remark: str) -> bool:
        player = self._players.get(player_id)
        if not player:
            return False
        player.whitelisted = whitelisted
        player.remark = remark
        return True

    # --- Games ---

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        game = self._games.get(game_id)
        return _copy_game(game) if game else None

    async def list_games(self, player_id: Optional[str] = None) -> list[GameRecord]:
        games = [
            g for g in self._games.values()
            if player_id is None or player_id in g.players
        ]
        games.sort(key=lambda g: as_utc(g.updated_at), reverse=True)
        return [_copy_game(g) for g in games]

    async def update_game_info(self, game_id: str, whitelisted: bool, remark: str) -> bool:
        game = self._games.get(game_id)
        if not game:
            return False
        game.whitelisted = whitelisted
        game.remark = remark
        return True

    async def delete_game(self, game_id: str) -> bool:
        async with self._lock:
            return self._drop_game(game_id)

    def _drop_game(self, game_id: str) -> bool:
        existed = self._games.pop(game_id, None) is not None
        for kind in SnapshotKind:
            self._snapshots.pop((game_id, kind), None)
        return existed

    # --- Snapshots ---

    async def latest_snapshot(self, game_id: str, kind: SnapshotKind) -> Optional[SnapshotRecord]:
        history = self._snapshots.get((game_id, kind))
        if not history:
            return None
        return replace(max(history, key=SnapshotRecord.sort_key))

    async def list_snapshots(
        self, game_id: str, kind: SnapshotKind, with_payload: bool = False
    ) -> list[SnapshotRecord]:
        history = sorted(self._snapshots.get((game_id, kind), []), key=SnapshotRecord.sort_key)
        if with_payload:
            return [replace(s) for s in history]
        return [replace(s, payload=b"") for s in history]

    @asynccontextmanager
    async def transaction(self, game_id: str) -> AsyncIterator[_MemoryTransaction]:
        async with self._lock:
            tx = _MemoryTransaction(self)
            yield tx
            tx._apply()

    # --- Retention ---

    async def delete_expired_games(
        self, stale_before: datetime, abandoned_before: datetime, limit: int
    ) -> int:
        async with self._lock:
            expired = [
                g.game_id for g in self._games.values()
                if not g.whitelisted and (
                    as_utc(g.updated_at) < stale_before
                    or (not g.established and as_utc(g.created_at) < abandoned_before)
                )
            ][:limit]
            for game_id in expired:
                self._drop_game(game_id)
            return len(expired)

    async def delete_orphan_players(self, stale_before: datetime, limit: int) -> int:
        async with self._lock:
            referenced = {pid for g in self._games.values() for pid in g.players}
            orphans = [
                p.player_id for p in self._players.values()
                if not p.whitelisted
                and p.player_id not in referenced
                and as_utc(p.updated_at) < stale_before
            ][:limit]
            for player_id in orphans:
                del self._players[player_id]
            return len(orphans)

    async def trim_snapshot_history(self, limit: int) -> int:
        async with self._lock:
            removed = 0
            for key, history in self._snapshots.items():
                if removed >= limit:
                    break
                if len(history) <= 1:
                    continue
                latest = max(history, key=SnapshotRecord.sort_key)
                superseded = [s for s in history if s is not latest][:limit - removed]
                self._snapshots[key] = [s for s in history if s not in superseded]
                removed += len(superseded)
            return removed

    async def stats(self) -> StoreStats:
        return StoreStats(
            player_count=len(self._players),
            whitelist_player_count=sum(1 for p in self._players.values() if p.whitelisted),
            game_count=len(self._games),
            whitelist_game_count=sum(1 for g in self._games.values() if g.whitelisted),
            snapshot_count=sum(len(h) for h in self._snapshots.values()),
            max_game_turns=max((g.turns for g in self._games.values()), default=0),
        )

    async def close(self) -> None:
        return None
