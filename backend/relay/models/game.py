"""Game, membership and snapshot models."""
from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, ForeignKey, Index,
    LargeBinary, UniqueConstraint,
)
from datetime import datetime, timezone

from .base import Base


class Game(Base):
    """One logical game; aggregates its content and preview snapshots."""
    __tablename__ = "games"

    game_id = Column(String(36), primary_key=True)  # UUID without _Preview suffix
    whitelisted = Column(Boolean, default=False, nullable=False, index=True)
    remark = Column(String(500), nullable=False, default="")
    turns = Column(Integer, default=0, nullable=False)  # latest accepted content turn
    created_player = Column(String(36), nullable=True, index=True)
    established = Column(Boolean, default=False, nullable=False)  # written again after the activity window
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)


class GamePlayer(Base):
    """Derived membership row: one human player listed in the latest snapshot."""
    __tablename__ = "game_players"

    __table_args__ = (
        UniqueConstraint("game_id", "player_id", name="uq_game_players_game_player"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(String(36), ForeignKey('games.game_id', ondelete='CASCADE'), nullable=False, index=True)
    player_id = Column(String(36), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)  # declaration order in the payload


class Snapshot(Base):
    """One immutable stored copy of a game's compressed state."""
    __tablename__ = "snapshots"

    __table_args__ = (
        Index("idx_snapshots_latest", "game_id", "kind", "created_at", "turns"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(String(36), ForeignKey('games.game_id', ondelete='CASCADE'), nullable=False, index=True)
    kind = Column(String(16), nullable=False)  # content | preview
    turns = Column(Integer, default=0, nullable=False)
    created_player = Column(String(36), nullable=True)
    created_ip = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    is_private = Column(Boolean, default=False, nullable=False)  # anyoneCanSpectate == false
    payload = Column(LargeBinary, nullable=False)  # gzip bytes
