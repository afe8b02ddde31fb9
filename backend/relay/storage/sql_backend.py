"""Relational storage backend (SQLite / PostgreSQL via SQLAlchemy async).

Membership rows and snapshots are deleted explicitly instead of relying on
ON DELETE CASCADE, so SQLite databases created without foreign key
enforcement behave the same as PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, defer

from relay.core.database_async import build_async_engine, build_session_factory, init_async_db
from relay.core.exceptions import StorageConflictError, StorageError
from relay.models import Game, GamePlayer, Player, Snapshot
from relay.schemas.enums import SnapshotKind
from relay.storage.records import (
    GameRecord, PlayerRecord, SnapshotRecord, StoreStats, as_utc,
)

logger = logging.getLogger(__name__)


def _player_record(row: Player) -> PlayerRecord:
    return PlayerRecord(
        player_id=row.player_id,
        password_hash=row.password_hash,
        whitelisted=row.whitelisted,
        remark=row.remark or "",
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        create_ip=row.create_ip,
        update_ip=row.update_ip,
    )


def _game_record(row: Game, players: list[str]) -> GameRecord:
    return GameRecord(
        game_id=row.game_id,
        players=players,
        whitelisted=row.whitelisted,
        remark=row.remark or "",
        turns=row.turns,
        created_player=row.created_player,
        established=row.established,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _snapshot_record(row: Snapshot, with_payload: bool = True) -> SnapshotRecord:
    return SnapshotRecord(
        id=row.id,
        game_id=row.game_id,
        kind=SnapshotKind(row.kind),
        payload=row.payload if with_payload else b"",
        turns=row.turns,
        created_player=row.created_player,
        created_ip=row.created_ip,
        created_at=as_utc(row.created_at),
        is_private=row.is_private,
    )


async def _load_members(session: AsyncSession, game_ids: Iterable[str]) -> dict[str, list[str]]:
    ids = list(game_ids)
    members: dict[str, list[str]] = {game_id: [] for game_id in ids}
    if not ids:
        return members
    result = await session.execute(
        select(GamePlayer.game_id, GamePlayer.player_id)
        .where(GamePlayer.game_id.in_(ids))
        .order_by(GamePlayer.game_id, GamePlayer.position)
    )
    for game_id, player_id in result.all():
        members[game_id].append(player_id)
    return members


class _SqlTransaction:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        result = await self._session.execute(
            select(Game).where(Game.game_id == game_id).with_for_update()
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        members = await _load_members(self._session, [game_id])
        return _game_record(row, members[game_id])

    async def save_game(self, game: GameRecord) -> None:
        session = self._session
        row = await session.get(Game, game.game_id)
        if row is None:
            row = Game(game_id=game.game_id)
            session.add(row)
        row.whitelisted = game.whitelisted
        row.remark = game.remark
        row.turns = game.turns
        row.created_player = game.created_player
        row.established = game.established
        row.created_at = game.created_at
        row.updated_at = game.updated_at
        # Parent row must exist before membership rows reference it
        await session.flush()

        await session.execute(delete(GamePlayer).where(GamePlayer.game_id == game.game_id))
        for position, player_id in enumerate(game.players):
            session.add(GamePlayer(game_id=game.game_id, player_id=player_id, position=position))
        await session.flush()

    async def add_snapshot(self, snapshot: SnapshotRecord) -> None:
        row = Snapshot(
            game_id=snapshot.game_id,
            kind=SnapshotKind(snapshot.kind).value,
            turns=snapshot.turns,
            created_player=snapshot.created_player,
            created_ip=snapshot.created_ip,
            created_at=snapshot.created_at,
            is_private=snapshot.is_private,
            payload=snapshot.payload,
        )
        self._session.add(row)
        await self._session.flush()
        snapshot.id = row.id


class SqlBackend:
    """SQLAlchemy-backed storage.

    Every public method runs in its own session and transaction. Lock
    contention (IntegrityError on a concurrent insert, OperationalError on a
    busy SQLite database or a PostgreSQL serialization failure) surfaces as
    StorageConflictError so callers can retry; any other engine failure is a
    StorageError.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self._engine = build_async_engine(database_url, echo=echo)
        self._session_factory = build_session_factory(self._engine)

    async def initialize(self) -> None:
        await init_async_db(self._engine)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (IntegrityError, OperationalError) as e:
            logger.warning(f"Storage conflict: {e}")
            raise StorageConflictError(str(e)) from e
        except SQLAlchemyError as e:
            logger.error(f"Storage failure: {e}")
            raise StorageError(str(e)) from e

    # --- Players ---

    async def get_player(self, player_id: str) -> Optional[PlayerRecord]:
        async with self._session() as session:
            row = await session.get(Player, player_id)
            return _player_record(row) if row else None

    async def save_player(self, player: PlayerRecord) -> None:
        async with self._session() as session:
            row = await session.get(Player, player.player_id)
            if row is None:
                row = Player(player_id=player.player_id)
                session.add(row)
            row.password_hash = player.password_hash
            row.whitelisted = player.whitelisted
            row.remark = player.remark
            row.created_at = player.created_at
            row.updated_at = player.updated_at
            row.create_ip = player.create_ip
            row.update_ip = player.update_ip

    async def touch_player(self, player_id: str, ip: Optional[str], at: datetime) -> None:
        async with self._session() as session:
            await session.execute(
                update(Player)
                .where(Player.player_id == player_id)
                .values(updated_at=at, update_ip=ip)
            )

    async def list_players(self) -> list[PlayerRecord]:
        async with self._session() as session:
            result = await session.execute(select(Player).order_by(Player.created_at.desc()))
            return [_player_record(row) for row in result.scalars().all()]

    async def update_player_info(self, player_id: str, whitelisted: bool, remark: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(Player)
                .where(Player.player_id == player_id)
                .values(whitelisted=whitelisted, remark=remark)
            )
            return result.rowcount > 0

    # --- Games ---

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        async with self._session() as session:
            row = await session.get(Game, game_id)
            if row is None:
                return None
            members = await _load_members(session, [game_id])
            return _game_record(row, members[game_id])

    async def list_games(self, player_id: Optional[str] = None) -> list[GameRecord]:
        async with self._session() as session:
            query = select(Game).order_by(Game.updated_at.desc())
            if player_id is not None:
                query = query.where(
                    exists().where(
                        and_(GamePlayer.game_id == Game.game_id, GamePlayer.player_id == player_id)
                    )
                )
            rows = (await session.execute(query)).scalars().all()
            members = await _load_members(session, [row.game_id for row in rows])
            return [_game_record(row, members[row.game_id]) for row in rows]

    async def update_game_info(self, game_id: str, whitelisted: bool, remark: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(Game)
                .where(Game.game_id == game_id)
                .values(whitelisted=whitelisted, remark=remark)
            )
            return result.rowcount > 0

    async def delete_game(self, game_id: str) -> bool:
        async with self._session() as session:
            return await self._delete_games(session, [game_id]) > 0

    @staticmethod
    async def _delete_games(session: AsyncSession, game_ids: list[str]) -> int:
        if not game_ids:
            return 0
        await session.execute(delete(Snapshot).where(Snapshot.game_id.in_(game_ids)))
        await session.execute(delete(GamePlayer).where(GamePlayer.game_id.in_(game_ids)))
        result = await session.execute(delete(Game).where(Game.game_id.in_(game_ids)))
        return result.rowcount

    # --- Snapshots ---

    async def latest_snapshot(self, game_id: str, kind: SnapshotKind) -> Optional[SnapshotRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(Snapshot)
                .where(Snapshot.game_id == game_id, Snapshot.kind == SnapshotKind(kind).value)
                .order_by(Snapshot.created_at.desc(), Snapshot.turns.desc(), Snapshot.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _snapshot_record(row) if row else None

    async def list_snapshots(
        self, game_id: str, kind: SnapshotKind, with_payload: bool = False
    ) -> list[SnapshotRecord]:
        query = select(Snapshot)
        if not with_payload:
            query = query.options(defer(Snapshot.payload))
        async with self._session() as session:
            result = await session.execute(
                query
                .where(Snapshot.game_id == game_id, Snapshot.kind == SnapshotKind(kind).value)
                .order_by(Snapshot.created_at, Snapshot.turns, Snapshot.id)
            )
            return [_snapshot_record(row, with_payload=with_payload) for row in result.scalars().all()]

    @asynccontextmanager
    async def transaction(self, game_id: str) -> AsyncIterator[_SqlTransaction]:
        async with self._session() as session:
            yield _SqlTransaction(session)

    # --- Retention ---
    # Candidates are locked with FOR UPDATE SKIP LOCKED (a no-op on SQLite,
    # whose writers already serialize) and every DELETE repeats the expiry
    # filter, so a game or player refreshed after selection is kept.

    @staticmethod
    def _expired_games_filter(stale_before: datetime, abandoned_before: datetime):
        return and_(
            Game.whitelisted.is_(False),
            or_(
                Game.updated_at < stale_before,
                and_(Game.established.is_(False), Game.created_at < abandoned_before),
            ),
        )

    @staticmethod
    def _orphan_players_filter(stale_before: datetime):
        return and_(
            Player.whitelisted.is_(False),
            Player.updated_at < stale_before,
            ~exists().where(GamePlayer.player_id == Player.player_id),
        )

    @staticmethod
    async def _lock_candidates(session: AsyncSession, column, expired, limit: int) -> list[str]:
        result = await session.execute(
            select(column).where(expired).limit(limit).with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def delete_expired_games(
        self, stale_before: datetime, abandoned_before: datetime, limit: int
    ) -> int:
        expired = self._expired_games_filter(stale_before, abandoned_before)
        async with self._session() as session:
            game_ids = await self._lock_candidates(session, Game.game_id, expired, limit)
            if not game_ids:
                return 0
            still_expired = select(Game.game_id).where(Game.game_id.in_(game_ids), expired)
            await session.execute(
                delete(Snapshot).where(Snapshot.game_id.in_(still_expired)),
                execution_options={"synchronize_session": False},
            )
            await session.execute(
                delete(GamePlayer).where(GamePlayer.game_id.in_(still_expired)),
                execution_options={"synchronize_session": False},
            )
            deleted = await session.execute(
                delete(Game).where(Game.game_id.in_(game_ids), expired),
                execution_options={"synchronize_session": False},
            )
            return deleted.rowcount

    async def delete_orphan_players(self, stale_before: datetime, limit: int) -> int:
        expired = self._orphan_players_filter(stale_before)
        async with self._session() as session:
            player_ids = await self._lock_candidates(session, Player.player_id, expired, limit)
            if not player_ids:
                return 0
            deleted = await session.execute(
                delete(Player).where(Player.player_id.in_(player_ids), expired),
                execution_options={"synchronize_session": False},
            )
            return deleted.rowcount

    async def trim_snapshot_history(self, limit: int) -> int:
        newer = aliased(Snapshot)
        superseded = exists().where(
            newer.game_id == Snapshot.game_id,
            newer.kind == Snapshot.kind,
            or_(
                newer.created_at > Snapshot.created_at,
                and_(newer.created_at == Snapshot.created_at, newer.turns > Snapshot.turns),
                and_(
                    newer.created_at == Snapshot.created_at,
                    newer.turns == Snapshot.turns,
                    newer.id > Snapshot.id,
                ),
            ),
        )
        async with self._session() as session:
            result = await session.execute(select(Snapshot.id).where(superseded).limit(limit))
            snapshot_ids = list(result.scalars().all())
            if not snapshot_ids:
                return 0
            deleted = await session.execute(delete(Snapshot).where(Snapshot.id.in_(snapshot_ids)))
            return deleted.rowcount

    async def stats(self) -> StoreStats:
        async with self._session() as session:
            player_count = await session.scalar(select(func.count()).select_from(Player))
            whitelist_players = await session.scalar(
                select(func.count()).select_from(Player).where(Player.whitelisted.is_(True))
            )
            game_count = await session.scalar(select(func.count()).select_from(Game))
            whitelist_games = await session.scalar(
                select(func.count()).select_from(Game).where(Game.whitelisted.is_(True))
            )
            snapshot_count = await session.scalar(select(func.count()).select_from(Snapshot))
            max_turns = await session.scalar(select(func.max(Game.turns)))
            return StoreStats(
                player_count=player_count or 0,
                whitelist_player_count=whitelist_players or 0,
                game_count=game_count or 0,
                whitelist_game_count=whitelist_games or 0,
                snapshot_count=snapshot_count or 0,
                max_game_turns=max_turns or 0,
            )

    async def close(self) -> None:
        await self._engine.dispose()
