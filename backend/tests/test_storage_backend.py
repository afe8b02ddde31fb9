"""Behavioral tests shared by every storage backend.

Each test runs against the in-memory, SQL (SQLite in memory) and Redis
(fake client) implementations.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy import update

from relay.core.config import Settings
from relay.models import Game, Player
from relay.schemas.enums import SnapshotKind
from relay.storage import InMemoryBackend, create_backend
from relay.storage.records import GameRecord, PlayerRecord, SnapshotRecord, StoreStats, utcnow
from relay.storage.redis_backend import RedisBackend
from relay.storage.sql_backend import SqlBackend

from conftest import PLAYER_A, PLAYER_B, PLAYER_C
from fake_redis import FakeAsyncRedis

GAME_1 = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
GAME_2 = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
CONTENT = SnapshotKind.CONTENT
PREVIEW = SnapshotKind.PREVIEW


@pytest_asyncio.fixture(params=["memory", "sql", "redis"])
async def store(request):
    if request.param == "memory":
        backend = InMemoryBackend()
    elif request.param == "sql":
        backend = SqlBackend("sqlite+aiosqlite:///:memory:")
    else:
        backend = RedisBackend("redis://fake:6379/0", key_prefix="test:", client=FakeAsyncRedis())
    await backend.initialize()
    yield backend
    await backend.close()


async def save_game(store, game_id, players, **fields):
    now = utcnow()
    fields.setdefault("created_at", now)
    fields.setdefault("updated_at", now)
    game = GameRecord(game_id=game_id, players=list(players), **fields)
    async with store.transaction(game_id) as tx:
        await tx.save_game(game)
    return game


async def add_snapshot(store, game_id, kind=CONTENT, payload=b"data", turns=0, created_at=None, **fields):
    snapshot = SnapshotRecord(
        game_id=game_id, kind=kind, payload=payload, turns=turns,
        created_at=created_at or utcnow(), **fields,
    )
    async with store.transaction(game_id) as tx:
        await tx.add_snapshot(snapshot)
    return snapshot


class TestPlayers:

    @pytest.mark.asyncio
    async def test_missing_player(self, store):
        assert await store.get_player(PLAYER_A) is None

    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        player = PlayerRecord(player_id=PLAYER_A, password_hash="hash", create_ip="1.1.1.1")
        await store.save_player(player)
        loaded = await store.get_player(PLAYER_A)
        assert loaded.password_hash == "hash"
        assert loaded.create_ip == "1.1.1.1"
        assert loaded.update_ip is None
        assert loaded.whitelisted is False
        assert loaded.created_at == player.created_at

    @pytest.mark.asyncio
    async def test_save_replaces(self, store):
        await store.save_player(PlayerRecord(player_id=PLAYER_A, password_hash="old"))
        await store.save_player(PlayerRecord(player_id=PLAYER_A, password_hash="new"))
        assert (await store.get_player(PLAYER_A)).password_hash == "new"
        assert len(await store.list_players()) == 1

    @pytest.mark.asyncio
    async def test_touch(self, store):
        await store.save_player(PlayerRecord(player_id=PLAYER_A, password_hash="h"))
        later = utcnow() + timedelta(hours=1)
        await store.touch_player(PLAYER_A, "9.9.9.9", later)
        loaded = await store.get_player(PLAYER_A)
        assert loaded.updated_at == later
        assert loaded.update_ip == "9.9.9.9"
        assert loaded.password_hash == "h"

    @pytest.mark.asyncio
    async def test_touch_unknown_is_noop(self, store):
        await store.touch_player(PLAYER_A, "9.9.9.9", utcnow())
        assert await store.get_player(PLAYER_A) is None

    @pytest.mark.asyncio
    async def test_update_info(self, store):
        await store.save_player(PlayerRecord(player_id=PLAYER_A, password_hash="h"))
        assert await store.update_player_info(PLAYER_A, True, "friend") is True
        loaded = await store.get_player(PLAYER_A)
        assert loaded.whitelisted is True
        assert loaded.remark == "friend"
        assert await store.update_player_info(PLAYER_B, True, "") is False
        assert await store.get_player(PLAYER_B) is None


class TestGames:

    @pytest.mark.asyncio
    async def test_save_and_get_with_members(self, store):
        await save_game(store, GAME_1, [PLAYER_B, PLAYER_A], turns=3, created_player=PLAYER_B)
        game = await store.get_game(GAME_1)
        assert game.players == [PLAYER_B, PLAYER_A]
        assert game.turns == 3
        assert game.created_player == PLAYER_B
        assert game.established is False

    @pytest.mark.asyncio
    async def test_membership_replaced(self, store):
        await save_game(store, GAME_1, [PLAYER_A, PLAYER_B])
        await save_game(store, GAME_1, [PLAYER_B, PLAYER_C])
        assert (await store.get_game(GAME_1)).players == [PLAYER_B, PLAYER_C]
        assert await store.list_games(PLAYER_A) == []
        assert [g.game_id for g in await store.list_games(PLAYER_C)] == [GAME_1]

    @pytest.mark.asyncio
    async def test_list_games_newest_first(self, store):
        now = utcnow()
        await save_game(store, GAME_1, [PLAYER_A], updated_at=now - timedelta(hours=1))
        await save_game(store, GAME_2, [PLAYER_B], updated_at=now)
        assert [g.game_id for g in await store.list_games()] == [GAME_2, GAME_1]
        assert [g.game_id for g in await store.list_games(PLAYER_A)] == [GAME_1]

    @pytest.mark.asyncio
    async def test_update_info(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        assert await store.update_game_info(GAME_1, True, "tournament") is True
        game = await store.get_game(GAME_1)
        assert game.whitelisted is True
        assert game.remark == "tournament"
        assert game.players == [PLAYER_A]
        assert await store.update_game_info(GAME_2, True, "") is False

    @pytest.mark.asyncio
    async def test_delete_game(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        await add_snapshot(store, GAME_1)
        await add_snapshot(store, GAME_1, kind=PREVIEW)
        assert await store.delete_game(GAME_1) is True
        assert await store.get_game(GAME_1) is None
        assert await store.latest_snapshot(GAME_1, CONTENT) is None
        assert await store.latest_snapshot(GAME_1, PREVIEW) is None
        assert await store.list_games(PLAYER_A) == []
        assert await store.delete_game(GAME_1) is False


class TestSnapshots:

    @pytest.mark.asyncio
    async def test_latest_by_created_at(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        now = utcnow()
        await add_snapshot(store, GAME_1, payload=b"new", turns=1, created_at=now)
        await add_snapshot(store, GAME_1, payload=b"old", turns=5, created_at=now - timedelta(seconds=5))
        latest = await store.latest_snapshot(GAME_1, CONTENT)
        assert latest.payload == b"new"

    @pytest.mark.asyncio
    async def test_turns_break_ties(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        now = utcnow()
        await add_snapshot(store, GAME_1, payload=b"high", turns=9, created_at=now)
        await add_snapshot(store, GAME_1, payload=b"low", turns=2, created_at=now)
        assert (await store.latest_snapshot(GAME_1, CONTENT)).payload == b"high"

    @pytest.mark.asyncio
    async def test_kinds_are_separate(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        await add_snapshot(store, GAME_1, kind=PREVIEW, payload=b"preview")
        assert await store.latest_snapshot(GAME_1, CONTENT) is None
        assert (await store.latest_snapshot(GAME_1, PREVIEW)).payload == b"preview"

    @pytest.mark.asyncio
    async def test_metadata_round_trip(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        await add_snapshot(
            store, GAME_1, payload=b"\x1f\x8b\x00binary", turns=4,
            created_player=PLAYER_A, created_ip="2.2.2.2", is_private=True,
        )
        latest = await store.latest_snapshot(GAME_1, CONTENT)
        assert latest.payload == b"\x1f\x8b\x00binary"
        assert latest.turns == 4
        assert latest.created_player == PLAYER_A
        assert latest.created_ip == "2.2.2.2"
        assert latest.is_private is True
        assert latest.id is not None

    @pytest.mark.asyncio
    async def test_list_snapshots_oldest_first_without_payload(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        now = utcnow()
        for turn in (1, 2, 3):
            await add_snapshot(store, GAME_1, turns=turn, created_at=now + timedelta(seconds=turn))
        history = await store.list_snapshots(GAME_1, CONTENT)
        assert [s.turns for s in history] == [1, 2, 3]
        assert all(s.payload == b"" for s in history)

    @pytest.mark.asyncio
    async def test_list_snapshots_with_payload(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        now = utcnow()
        for turn in (1, 2):
            await add_snapshot(
                store, GAME_1, payload=f"turn-{turn}".encode(), turns=turn,
                created_at=now + timedelta(seconds=turn),
            )
        await add_snapshot(store, GAME_1, kind=PREVIEW, payload=b"preview")
        history = await store.list_snapshots(GAME_1, CONTENT, with_payload=True)
        assert [(s.turns, s.payload) for s in history] == [(1, b"turn-1"), (2, b"turn-2")]

    @pytest.mark.asyncio
    async def test_failed_transaction_leaves_nothing(self, store):
        with pytest.raises(RuntimeError):
            async with store.transaction(GAME_1) as tx:
                await tx.save_game(GameRecord(game_id=GAME_1, players=[PLAYER_A]))
                await tx.add_snapshot(SnapshotRecord(game_id=GAME_1, kind=CONTENT, payload=b"x"))
                raise RuntimeError("abort")
        assert await store.get_game(GAME_1) is None
        assert await store.latest_snapshot(GAME_1, CONTENT) is None

    @pytest.mark.asyncio
    async def test_transaction_reads_recorded_members(self, store):
        await save_game(store, GAME_1, [PLAYER_A, PLAYER_B])
        async with store.transaction(GAME_1) as tx:
            game = await tx.get_game(GAME_1)
            assert game.players == [PLAYER_A, PLAYER_B]
            assert await tx.get_game(GAME_2) is None


class TestRetention:

    @pytest.mark.asyncio
    async def test_delete_expired_games(self, store):
        now = utcnow()
        old = now - timedelta(days=100)
        await save_game(store, GAME_1, [PLAYER_A], created_at=old, updated_at=old, established=True)
        await save_game(store, GAME_2, [PLAYER_B], created_at=old, updated_at=old, whitelisted=True)
        await add_snapshot(store, GAME_1)

        deleted = await store.delete_expired_games(now - timedelta(days=90), now - timedelta(hours=24), 10)
        assert deleted == 1
        assert await store.get_game(GAME_1) is None
        assert await store.get_game(GAME_2) is not None
        assert await store.latest_snapshot(GAME_1, CONTENT) is None

    @pytest.mark.asyncio
    async def test_delete_abandoned_games(self, store):
        now = utcnow()
        day_old = now - timedelta(hours=30)
        await save_game(store, GAME_1, [PLAYER_A], created_at=day_old, updated_at=now, established=False)
        await save_game(store, GAME_2, [PLAYER_B], created_at=day_old, updated_at=now, established=True)
        deleted = await store.delete_expired_games(now - timedelta(days=90), now - timedelta(hours=24), 10)
        assert deleted == 1
        assert await store.get_game(GAME_2) is not None

    @pytest.mark.asyncio
    async def test_delete_respects_limit(self, store):
        old = utcnow() - timedelta(days=100)
        await save_game(store, GAME_1, [PLAYER_A], created_at=old, updated_at=old)
        await save_game(store, GAME_2, [PLAYER_A], created_at=old, updated_at=old)
        now = utcnow()
        assert await store.delete_expired_games(now - timedelta(days=90), now, 1) == 1
        assert await store.delete_expired_games(now - timedelta(days=90), now, 1) == 1
        assert await store.delete_expired_games(now - timedelta(days=90), now, 1) == 0

    @pytest.mark.asyncio
    async def test_delete_orphan_players(self, store):
        old = utcnow() - timedelta(days=100)
        for player_id in (PLAYER_A, PLAYER_B, PLAYER_C):
            await store.save_player(PlayerRecord(
                player_id=player_id, password_hash="h", created_at=old, updated_at=old,
                whitelisted=player_id == PLAYER_C,
            ))
        await save_game(store, GAME_1, [PLAYER_B])

        assert await store.delete_orphan_players(utcnow() - timedelta(days=90), 10) == 1
        assert await store.get_player(PLAYER_A) is None
        assert await store.get_player(PLAYER_B) is not None
        assert await store.get_player(PLAYER_C) is not None

    @pytest.mark.asyncio
    async def test_trim_snapshot_history(self, store):
        await save_game(store, GAME_1, [PLAYER_A])
        await save_game(store, GAME_2, [PLAYER_A])
        now = utcnow()
        for i in range(3):
            await add_snapshot(store, GAME_1, payload=f"c{i}".encode(), created_at=now + timedelta(seconds=i))
        await add_snapshot(store, GAME_1, kind=PREVIEW, payload=b"p")
        await add_snapshot(store, GAME_2, payload=b"only")

        assert await store.trim_snapshot_history(100) == 2
        assert (await store.latest_snapshot(GAME_1, CONTENT)).payload == b"c2"
        assert len(await store.list_snapshots(GAME_1, CONTENT)) == 1
        assert (await store.latest_snapshot(GAME_1, PREVIEW)).payload == b"p"
        assert (await store.latest_snapshot(GAME_2, CONTENT)).payload == b"only"
        assert await store.trim_snapshot_history(100) == 0

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.save_player(PlayerRecord(player_id=PLAYER_A, password_hash="h", whitelisted=True))
        await store.save_player(PlayerRecord(player_id=PLAYER_B, password_hash="h"))
        await save_game(store, GAME_1, [PLAYER_A], turns=12, whitelisted=True)
        await save_game(store, GAME_2, [PLAYER_B], turns=4)
        await add_snapshot(store, GAME_1)
        await add_snapshot(store, GAME_1, kind=PREVIEW)

        assert await store.stats() == StoreStats(
            player_count=2,
            whitelist_player_count=1,
            game_count=2,
            whitelist_game_count=1,
            snapshot_count=2,
            max_game_turns=12,
        )


class TestSqlRetentionRecheck:
    """A row refreshed between candidate selection and deletion survives the sweep."""

    @pytest_asyncio.fixture
    async def sql_store(self):
        backend = SqlBackend("sqlite+aiosqlite:///:memory:")
        await backend.initialize()
        yield backend
        await backend.close()

    @staticmethod
    def refresh_after_select(statement):
        original = SqlBackend._lock_candidates

        async def lock_candidates(session, column, expired, limit):
            ids = await original(session, column, expired, limit)
            # Another writer commits before the DELETE runs
            await session.execute(statement)
            return ids
        return patch.object(SqlBackend, "_lock_candidates", staticmethod(lock_candidates))

    @pytest.mark.asyncio
    async def test_refreshed_game_is_kept(self, sql_store):
        old = utcnow() - timedelta(days=100)
        await save_game(sql_store, GAME_1, [PLAYER_A], created_at=old, updated_at=old, established=True)
        await save_game(sql_store, GAME_2, [PLAYER_B], created_at=old, updated_at=old, established=True)
        await add_snapshot(sql_store, GAME_2, payload=b"turn-2")

        now = utcnow()
        refresh = update(Game).where(Game.game_id == GAME_2).values(updated_at=now)
        with self.refresh_after_select(refresh):
            deleted = await sql_store.delete_expired_games(
                now - timedelta(days=90), now - timedelta(hours=24), 10
            )

        assert deleted == 1
        assert await sql_store.get_game(GAME_1) is None
        kept = await sql_store.get_game(GAME_2)
        assert kept.players == [PLAYER_B]
        assert (await sql_store.latest_snapshot(GAME_2, CONTENT)).payload == b"turn-2"

    @pytest.mark.asyncio
    async def test_refreshed_player_is_kept(self, sql_store):
        old = utcnow() - timedelta(days=100)
        for player_id in (PLAYER_A, PLAYER_B):
            await sql_store.save_player(PlayerRecord(
                player_id=player_id, password_hash="h", created_at=old, updated_at=old,
            ))

        refresh = update(Player).where(Player.player_id == PLAYER_B).values(updated_at=utcnow())
        with self.refresh_after_select(refresh):
            deleted = await sql_store.delete_orphan_players(utcnow() - timedelta(days=90), 10)

        assert deleted == 1
        assert await sql_store.get_player(PLAYER_A) is None
        assert await sql_store.get_player(PLAYER_B) is not None


class TestCreateBackend:

    def test_memory(self):
        assert isinstance(create_backend(Settings(STORE_BACKEND="memory")), InMemoryBackend)

    def test_unknown_falls_back_to_memory(self):
        assert isinstance(create_backend(Settings(STORE_BACKEND="cassandra")), InMemoryBackend)

    def test_redis_without_url_falls_back_to_memory(self):
        assert isinstance(create_backend(Settings(STORE_BACKEND="redis", REDIS_URL="")), InMemoryBackend)

    def test_redis(self):
        backend = create_backend(Settings(STORE_BACKEND="redis", REDIS_URL="redis://localhost:6379/0"))
        assert isinstance(backend, RedisBackend)

    def test_sql(self):
        backend = create_backend(Settings(STORE_BACKEND="sql", DATABASE_URL="sqlite:///:memory:"))
        assert isinstance(backend, SqlBackend)
