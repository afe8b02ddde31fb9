"""Redis storage backend for players, games and snapshots.

Enables multi-instance deployment with shared state. Optimistic
concurrency uses WATCH/MULTI/EXEC on the game hash: a concurrent write to
the same game aborts the transaction and surfaces as StorageConflictError.

Key schema (all under the configured prefix):
    player:{player_id}           -> hash of player fields
    players                      -> set of player ids
    game:{game_id}               -> hash of game fields (players as JSON list)
    games                        -> set of game ids
    player-games:{player_id}     -> set of game ids the player belongs to
    snapshots:{game_id}:{kind}   -> hash snapshot id -> JSON metadata
    snapshot:{snapshot_id}       -> base64 gzip payload
    snapshot-seq                 -> snapshot id counter
"""

import base64
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from redis.exceptions import RedisError, WatchError

from relay.core.exceptions import StorageConflictError, StorageError
from relay.schemas.enums import SnapshotKind
from relay.storage.records import GameRecord, PlayerRecord, SnapshotRecord, StoreStats

logger = logging.getLogger(__name__)

_KEY_PREFIX = "relay:"


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _player_to_hash(player: PlayerRecord) -> dict:
    return {
        "player_id": player.player_id,
        "password_hash": player.password_hash,
        "whitelisted": _flag(player.whitelisted),
        "remark": player.remark,
        "created_at": player.created_at.isoformat(),
        "updated_at": player.updated_at.isoformat(),
        "create_ip": player.create_ip or "",
        "update_ip": player.update_ip or "",
    }


def _player_from_hash(data: dict) -> PlayerRecord:
    return PlayerRecord(
        player_id=data["player_id"],
        password_hash=data["password_hash"],
        whitelisted=data.get("whitelisted") == "1",
        remark=data.get("remark", ""),
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
        create_ip=data.get("create_ip") or None,
        update_ip=data.get("update_ip") or None,
    )


def _game_to_hash(game: GameRecord) -> dict:
    return {
        "game_id": game.game_id,
        "players": json.dumps(game.players),
        "whitelisted": _flag(game.whitelisted),
        "remark": game.remark,
        "turns": str(game.turns),
        "created_player": game.created_player or "",
        "established": _flag(game.established),
        "created_at": game.created_at.isoformat(),
        "updated_at": game.updated_at.isoformat(),
    }


def _game_from_hash(data: dict) -> GameRecord:
    return GameRecord(
        game_id=data["game_id"],
        players=json.loads(data.get("players") or "[]"),
        whitelisted=data.get("whitelisted") == "1",
        remark=data.get("remark", ""),
        turns=int(data.get("turns") or 0),
        created_player=data.get("created_player") or None,
        established=data.get("established") == "1",
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


def _snapshot_meta(snapshot: SnapshotRecord) -> str:
    return json.dumps({
        "id": snapshot.id,
        "game_id": snapshot.game_id,
        "kind": SnapshotKind(snapshot.kind).value,
        "turns": snapshot.turns,
        "created_player": snapshot.created_player,
        "created_ip": snapshot.created_ip,
        "created_at": snapshot.created_at.isoformat(),
        "is_private": snapshot.is_private,
    })


def _snapshot_from_meta(raw: str, payload: bytes = b"") -> SnapshotRecord:
    data = json.loads(raw)
    return SnapshotRecord(
        id=data["id"],
        game_id=data["game_id"],
        kind=SnapshotKind(data["kind"]),
        payload=payload,
        turns=data.get("turns", 0),
        created_player=data.get("created_player"),
        created_ip=data.get("created_ip"),
        created_at=datetime.fromisoformat(data["created_at"]),
        is_private=data.get("is_private", False),
    )


class _RedisTransaction:
    """Reads execute immediately on the watching pipeline; writes are buffered."""

    def __init__(self, backend: "RedisBackend", pipe) -> None:
        self._backend = backend
        self._pipe = pipe
        self._previous: dict[str, Optional[GameRecord]] = {}
        self._games: dict[str, GameRecord] = {}
        self._snapshots: list[SnapshotRecord] = []

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        data = await self._pipe.hgetall(self._backend._game_key(game_id))
        game = _game_from_hash(data) if data else None
        self._previous.setdefault(game_id, game)
        return game

    async def save_game(self, game: GameRecord) -> None:
        if game.game_id not in self._previous:
            await self.get_game(game.game_id)
        self._games[game.game_id] = game

    async def add_snapshot(self, snapshot: SnapshotRecord) -> None:
        snapshot.id = int(await self._pipe.incr(self._backend._key("snapshot-seq")))
        self._snapshots.append(snapshot)

    def queue_writes(self) -> None:
        backend = self._backend
        pipe = self._pipe
        for game_id, game in self._games.items():
            previous = self._previous.get(game_id)
            old_members = set(previous.players) if previous else set()
            pipe.hset(backend._game_key(game_id), mapping=_game_to_hash(game))
            pipe.sadd(backend._key("games"), game_id)
            for player_id in old_members - set(game.players):
                pipe.srem(backend._player_games_key(player_id), game_id)
            for player_id in game.players:
                pipe.sadd(backend._player_games_key(player_id), game_id)
        for snapshot in self._snapshots:
            pipe.set(
                backend._payload_key(snapshot.id),
                base64.b64encode(snapshot.payload).decode("ascii"),
            )
            pipe.hset(
                backend._snapshots_key(snapshot.game_id, snapshot.kind),
                str(snapshot.id),
                _snapshot_meta(snapshot),
            )


class RedisBackend:
    """Redis-backed storage.

    Every read returns a freshly deserialized record. Records live in
    hashes so field updates (activity touches, admin flags) never rewrite
    the credential or membership.
    """

    def __init__(self, redis_url: str, key_prefix: str = _KEY_PREFIX, client=None):
        if client is None:
            import redis.asyncio as redis_lib
            client = redis_lib.Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, suffix: str) -> str:
        return f"{self._key_prefix}{suffix}"

    def _player_key(self, player_id: str) -> str:
        return self._key(f"player:{player_id}")

    def _game_key(self, game_id: str) -> str:
        return self._key(f"game:{game_id}")

    def _player_games_key(self, player_id: str) -> str:
        return self._key(f"player-games:{player_id}")

    def _snapshots_key(self, game_id: str, kind: SnapshotKind) -> str:
        return self._key(f"snapshots:{game_id}:{SnapshotKind(kind).value}")

    def _payload_key(self, snapshot_id: int) -> str:
        return self._key(f"snapshot:{snapshot_id}")

    async def initialize(self) -> None:
        try:
            await self._client.ping()
        except RedisError as e:
            raise StorageError(f"Redis unavailable: {e}") from e

    async def ping(self) -> bool:
        """Health check: verify Redis connectivity."""
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def _update_fields(self, key: str, fields: dict) -> bool:
        """HSET fields on an existing hash; never recreates a deleted record."""
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if not await pipe.exists(key):
                    return False
                pipe.multi()
                pipe.hset(key, mapping=fields)
                await pipe.execute()
                return True
        except WatchError as e:
            raise StorageConflictError(f"Concurrent update of {key}") from e
        except RedisError as e:
            raise StorageError(str(e)) from e

    # --- Players ---

    async def get_player(self, player_id: str) -> Optional[PlayerRecord]:
        try:
            data = await self._client.hgetall(self._player_key(player_id))
        except RedisError as e:
            raise StorageError(str(e)) from e
        return _player_from_hash(data) if data else None

    async def save_player(self, player: PlayerRecord) -> None:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(self._player_key(player.player_id), mapping=_player_to_hash(player))
                pipe.sadd(self._key("players"), player.player_id)
                await pipe.execute()
        except RedisError as e:
            raise StorageError(str(e)) from e

    async def touch_player(self, player_id: str, ip: Optional[str], at: datetime) -> None:
        await self._update_fields(
            self._player_key(player_id),
            {"updated_at": at.isoformat(), "update_ip": ip or ""},
        )

    async def list_players(self) -> list[PlayerRecord]:
        players = []
        for player_id in await self._members("players"):
            player = await self.get_player(player_id)
            if player:
                players.append(player)
        players.sort(key=lambda p: p.created_at, reverse=True)
        return players

    async def update_player_info(self, player_id: str, whitelisted: bool, remark: str) -> bool:
        return await self._update_fields(
            self._player_key(player_id),
            {"whitelisted": _flag(whitelisted), "remark": remark},
        )

    # --- Games ---

    async def _members(self, suffix: str) -> set[str]:
        try:
            return set(await self._client.smembers(self._key(suffix)))
        except RedisError as e:
            raise StorageError(str(e)) from e

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        try:
            data = await self._client.hgetall(self._game_key(game_id))
        except RedisError as e:
            raise StorageError(str(e)) from e
        return _game_from_hash(data) if data else None

    async def list_games(self, player_id: Optional[str] = None) -> list[GameRecord]:
        if player_id is None:
            game_ids = await self._members("games")
        else:
            game_ids = await self._members(f"player-games:{player_id}")
        games = []
        for game_id in game_ids:
            game = await self.get_game(game_id)
            if game:
                games.append(game)
        games.sort(key=lambda g: g.updated_at, reverse=True)
        return games

    async def update_game_info(self, game_id: str, whitelisted: bool, remark: str) -> bool:
        return await self._update_fields(
            self._game_key(game_id),
            {"whitelisted": _flag(whitelisted), "remark": remark},
        )

    async def delete_game(self, game_id: str) -> bool:
        try:
            return await self._delete_game(game_id)
        except WatchError as e:
            raise StorageConflictError(f"Concurrent update of game {game_id}") from e
        except RedisError as e:
            raise StorageError(str(e)) from e

    async def _delete_game(self, game_id: str, expired=None) -> bool:
        """Delete one game atomically; `expired` re-checks the record under WATCH."""
        game_key = self._game_key(game_id)
        async with self._client.pipeline(transaction=True) as pipe:
            await pipe.watch(game_key)
            data = await pipe.hgetall(game_key)
            if not data:
                return False
            game = _game_from_hash(data)
            if expired is not None and not expired(game):
                return False
            snapshot_keys = [self._snapshots_key(game_id, kind) for kind in SnapshotKind]
            payload_keys = []
            for key in snapshot_keys:
                ids = await pipe.hkeys(key)
                payload_keys.extend(self._payload_key(int(i)) for i in ids)
            pipe.multi()
            pipe.delete(game_key, *snapshot_keys, *payload_keys)
            pipe.srem(self._key("games"), game_id)
            for player_id in game.players:
                pipe.srem(self._player_games_key(player_id), game_id)
            await pipe.execute()
            return True

    # --- Snapshots ---

    async def _load_history(self, game_id: str, kind: SnapshotKind) -> list[SnapshotRecord]:
        try:
            raw = await self._client.hgetall(self._snapshots_key(game_id, kind))
        except RedisError as e:
            raise StorageError(str(e)) from e
        return sorted((_snapshot_from_meta(v) for v in raw.values()), key=SnapshotRecord.sort_key)

    async def latest_snapshot(self, game_id: str, kind: SnapshotKind) -> Optional[SnapshotRecord]:
        history = await self._load_history(game_id, kind)
        if not history:
            return None
        latest = history[-1]
        try:
            encoded = await self._client.get(self._payload_key(latest.id))
        except RedisError as e:
            raise StorageError(str(e)) from e
        if encoded is None:
            # Deleted between the two reads
            return None
        latest.payload = base64.b64decode(encoded)
        return latest

    async def list_snapshots(
        self, game_id: str, kind: SnapshotKind, with_payload: bool = False
    ) -> list[SnapshotRecord]:
        history = await self._load_history(game_id, kind)
        if not with_payload or not history:
            return history
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for snapshot in history:
                    pipe.get(self._payload_key(snapshot.id))
                encoded = await pipe.execute()
        except RedisError as e:
            raise StorageError(str(e)) from e
        loaded = []
        for snapshot, value in zip(history, encoded):
            if value is None:
                # Trimmed between the two reads
                continue
            snapshot.payload = base64.b64decode(value)
            loaded.append(snapshot)
        return loaded

    @asynccontextmanager
    async def transaction(self, game_id: str) -> AsyncIterator[_RedisTransaction]:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(self._game_key(game_id))
                tx = _RedisTransaction(self, pipe)
                yield tx
                pipe.multi()
                tx.queue_writes()
                await pipe.execute()
        except WatchError as e:
            logger.info(f"Concurrent save for game {game_id}, aborting transaction")
            raise StorageConflictError(f"Concurrent update of game {game_id}") from e
        except RedisError as e:
            raise StorageError(str(e)) from e

    # --- Retention ---

    async def delete_expired_games(
        self, stale_before: datetime, abandoned_before: datetime, limit: int
    ) -> int:
        def expired(game: GameRecord) -> bool:
            if game.whitelisted:
                return False
            if game.updated_at < stale_before:
                return True
            return not game.established and game.created_at < abandoned_before

        deleted = 0
        for game_id in await self._members("games"):
            if deleted >= limit:
                break
            game = await self.get_game(game_id)
            if game is None or not expired(game):
                continue
            try:
                if await self._delete_game(game_id, expired=expired):
                    deleted += 1
            except WatchError:
                logger.info(f"Game {game_id} written during sweep, keeping it")
            except RedisError as e:
                raise StorageError(str(e)) from e
        return deleted

    async def delete_orphan_players(self, stale_before: datetime, limit: int) -> int:
        deleted = 0
        for player_id in await self._members("players"):
            if deleted >= limit:
                break
            player_key = self._player_key(player_id)
            membership_key = self._player_games_key(player_id)
            try:
                async with self._client.pipeline(transaction=True) as pipe:
                    await pipe.watch(player_key, membership_key)
                    data = await pipe.hgetall(player_key)
                    if not data:
                        continue
                    player = _player_from_hash(data)
                    if player.whitelisted or player.updated_at >= stale_before:
                        continue
                    if await pipe.scard(membership_key):
                        continue
                    pipe.multi()
                    pipe.delete(player_key)
                    pipe.srem(self._key("players"), player_id)
                    await pipe.execute()
                    deleted += 1
            except WatchError:
                logger.info(f"Player {player_id} active during sweep, keeping it")
            except RedisError as e:
                raise StorageError(str(e)) from e
        return deleted

    async def trim_snapshot_history(self, limit: int) -> int:
        removed = 0
        for game_id in await self._members("games"):
            for kind in SnapshotKind:
                if removed >= limit:
                    return removed
                history = await self._load_history(game_id, kind)
                superseded = history[:-1][:limit - removed]
                if not superseded:
                    continue
                try:
                    async with self._client.pipeline(transaction=True) as pipe:
                        pipe.hdel(self._snapshots_key(game_id, kind), *[str(s.id) for s in superseded])
                        pipe.delete(*[self._payload_key(s.id) for s in superseded])
                        await pipe.execute()
                except RedisError as e:
                    raise StorageError(str(e)) from e
                removed += len(superseded)
        return removed

    async def stats(self) -> StoreStats:
        players = await self.list_players()
        games = await self.list_games()
        snapshot_count = 0
        try:
            for game in games:
                for kind in SnapshotKind:
                    snapshot_count += await self._client.hlen(self._snapshots_key(game.game_id, kind))
        except RedisError as e:
            raise StorageError(str(e)) from e
        return StoreStats(
            player_count=len(players),
            whitelist_player_count=sum(1 for p in players if p.whitelisted),
            game_count=len(games),
            whitelist_game_count=sum(1 for g in games if g.whitelisted),
            snapshot_count=snapshot_count,
            max_game_turns=max((g.turns for g in games), default=0),
        )

    async def close(self) -> None:
        await self._client.aclose()
