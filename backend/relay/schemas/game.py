"""Admin and user API schemas."""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from relay.schemas.enums import SnapshotKind


class GameInfo(BaseModel):
    """Game summary (no payload)."""
    game_id: str
    players: list[str]
    whitelisted: bool
    remark: str
    turns: int
    created_player: Optional[str]
    established: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PlayerInfo(BaseModel):
    """Player summary; the password hash is never exposed."""
    player_id: str
    whitelisted: bool
    remark: str
    created_at: datetime
    updated_at: datetime
    create_ip: Optional[str]
    update_ip: Optional[str]

    class Config:
        from_attributes = True


class TurnInfo(BaseModel):
    """Snapshot history entry."""
    id: Optional[int]
    kind: SnapshotKind
    turns: int
    created_player: Optional[str]
    created_ip: Optional[str]
    created_at: datetime
    is_private: bool

    class Config:
        from_attributes = True


class UpdateInfoRequest(BaseModel):
    """Admin update of a game or player."""
    whitelisted: bool = False
    remark: str = Field("", max_length=500)


class SweepResponse(BaseModel):
    deleted_games: int
    deleted_players: int
    deleted_snapshots: int


class StatsResponse(BaseModel):
    player_count: int
    whitelist_player_count: int
    game_count: int
    whitelist_game_count: int
    snapshot_count: int
    max_game_turns: int

    class Config:
        from_attributes = True
