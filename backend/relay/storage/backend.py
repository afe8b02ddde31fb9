"""Storage backend protocol for players, games and snapshots.

Defines the abstract interface that all storage backends must implement.
The save coordinator, auth gate and retention sweeper only talk to this
protocol, so the relational, key-value and in-memory engines are swappable
at deployment time.
"""

from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol

from relay.schemas.enums import SnapshotKind
from relay.storage.records import GameRecord, PlayerRecord, SnapshotRecord, StoreStats


class SaveTransaction(Protocol):
    """Unit of work for one save.

    Reads made through the transaction see the state the write will be
    validated against; nothing is visible to other callers until the
    surrounding context exits cleanly. Raising inside the context discards
    every staged change.
    """

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        """Read the game (and its recorded membership) for update."""
        ...

    async def save_game(self, game: GameRecord) -> None:
        """Insert or replace the game row and its membership."""
        ...

    async def add_snapshot(self, snapshot: SnapshotRecord) -> None:
        """Append a snapshot; older snapshots are left for the sweeper."""
        ...


class SaveStoreBackend(Protocol):
    """Protocol defining the storage backend interface.

    Implementations:
    - SqlBackend: SQLAlchemy async (SQLite / PostgreSQL)
    - RedisBackend: Redis key-value storage with WATCH/MULTI transactions
    - InMemoryBackend: Dict-based storage for tests and local development
    """

    async def initialize(self) -> None:
        """Prepare the engine (create tables, check connectivity)."""
        ...

    # --- Players ---

    async def get_player(self, player_id: str) -> Optional[PlayerRecord]:
        """Retrieve a player by ID. Returns None if not found."""
        ...

    async def save_player(self, player: PlayerRecord) -> None:
        """Insert or replace a player."""
        ...

    async def touch_player(self, player_id: str, ip: Optional[str], at: datetime) -> None:
        """Record activity (updated_at / update_ip) for retention."""
        ...

    async def list_players(self) -> list[PlayerRecord]:
        """Return all players, newest first."""
        ...

    async def update_player_info(self, player_id: str, whitelisted: bool, remark: str) -> bool:
        """Update admin fields. Returns False if the player does not exist."""
        ...

    # --- Games ---

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        """Retrieve a game by ID. Returns None if not found."""
        ...

    async def list_games(self, player_id: Optional[str] = None) -> list[GameRecord]:
        """Return all games (or those a player belongs to), most recently updated first."""
        ...

    async def update_game_info(self, game_id: str, whitelisted: bool, remark: str) -> bool:
        """Update admin fields. Returns False if the game does not exist."""
        ...

    async def delete_game(self, game_id: str) -> bool:
        """Delete a game with its snapshots. Returns True if the game existed."""
        ...

    # --- Snapshots ---

    async def latest_snapshot(self, game_id: str, kind: SnapshotKind) -> Optional[SnapshotRecord]:
        """Return the latest snapshot by (created_at, turns), or None."""
        ...

    async def list_snapshots(
        self, game_id: str, kind: SnapshotKind, with_payload: bool = False
    ) -> list[SnapshotRecord]:
        """Return snapshot history oldest first; payloads are empty unless with_payload."""
        ...

    def transaction(self, game_id: str) -> AsyncContextManager[SaveTransaction]:
        """Open a write transaction scoped to one game."""
        ...

    # --- Retention (each call is one short transaction) ---

    async def delete_expired_games(
        self, stale_before: datetime, abandoned_before: datetime, limit: int
    ) -> int:
        """Delete up to `limit` non-whitelisted games that are stale or abandoned young."""
        ...

    async def delete_orphan_players(self, stale_before: datetime, limit: int) -> int:
        """Delete up to `limit` non-whitelisted, unreferenced, stale players."""
        ...

    async def trim_snapshot_history(self, limit: int) -> int:
        """Delete up to `limit` snapshots that are not the latest for their (game, kind)."""
        ...

    async def stats(self) -> StoreStats:
        """Return aggregate counts."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...
