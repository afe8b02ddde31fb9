"""Storage-agnostic records exchanged between the services and backends."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from relay.schemas.enums import SnapshotKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class PlayerRecord:
    player_id: str
    password_hash: str
    whitelisted: bool = False
    remark: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    create_ip: Optional[str] = None
    update_ip: Optional[str] = None


@dataclass
class GameRecord:
    """A game and its derived membership.

    players is recomputed from the latest accepted snapshot on every write;
    it is never edited on its own.
    """
    game_id: str
    players: list[str] = field(default_factory=list)
    whitelisted: bool = False
    remark: str = ""
    turns: int = 0
    created_player: Optional[str] = None
    established: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SnapshotRecord:
    game_id: str
    kind: SnapshotKind
    payload: bytes  # gzip-compressed JSON
    turns: int = 0
    created_player: Optional[str] = None
    created_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_private: bool = False
    id: Optional[int] = None

    def sort_key(self) -> tuple:
        """Ordering for "latest": created_at, then turns, then insertion id."""
        return (as_utc(self.created_at), self.turns, self.id or 0)


@dataclass
class StoreStats:
    player_count: int = 0
    whitelist_player_count: int = 0
    game_count: int = 0
    whitelist_game_count: int = 0
    snapshot_count: int = 0
    max_game_turns: int = 0
