"""Save coordinator - accepts and serves game snapshots.

Write path:
    1. decode the token (codec)
    2. embedded gameId must match the path
    3. caller must be a human player in the new save
    4. inside one storage transaction, the caller must also be in the
       recorded membership unless that membership has at most one player
    5. update the game, append the snapshot, commit
    6. invalidate the cached read for (game, kind)

Steps 1-3 depend only on the request and are never retried. Steps 4-5 are
retried when the backend reports contention.
"""
import io
import logging
import time
import zipfile
import zlib
from datetime import timedelta
from typing import Optional

from relay.core.config import settings as default_settings
from relay.core.exceptions import (
    GameNotFoundError, InternalError, PayloadError, SnapshotNotFoundError,
    StorageConflictError, StorageError, ValidationError,
)
from relay.schemas.enums import SnapshotKind
from relay.services import codec
from relay.services.cache import TTLCache
from relay.services.membership import (
    extract_game_id, extract_human_player_ids, extract_turns, is_spectatable,
)
from relay.storage.backend import SaveStoreBackend
from relay.storage.records import GameRecord, SnapshotRecord, as_utc, utcnow

logger = logging.getLogger(__name__)


def _cache_key(game_id: str, kind: SnapshotKind) -> str:
    return f"{game_id}:{SnapshotKind(kind).value}"


class SaveCoordinator:
    """Read/write state machine per (game_id, kind): Absent -> Exists."""

    def __init__(
        self,
        backend: SaveStoreBackend,
        snapshot_cache: TTLCache,
        max_retries: Optional[int] = None,
        activity_window: Optional[timedelta] = None,
    ):
        self._backend = backend
        self._cache = snapshot_cache
        self.max_retries = (
            max_retries if max_retries is not None else default_settings.SAVE_MAX_RETRIES
        )
        self.activity_window = activity_window or timedelta(
            minutes=default_settings.RETENTION_ACTIVITY_WINDOW_MINUTES
        )

    async def read(
        self, game_id: str, kind: SnapshotKind, player_id: Optional[str] = None
    ) -> str:
        """Return the latest snapshot token.

        Private saves (anyoneCanSpectate == false) are reported as missing
        to anyone outside the recorded membership.

        Raises:
            SnapshotNotFoundError: No snapshot, or not visible to the caller
        """
        key = _cache_key(game_id, kind)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached
        # Taken before the backend fetch: a write that commits after this
        # point bumps the generation and the stale token is not cached
        generation = await self._cache.generation(key)

        try:
            snapshot = await self._backend.latest_snapshot(game_id, kind)
            if snapshot is None:
                raise SnapshotNotFoundError(game_id, SnapshotKind(kind).value)

            if snapshot.is_private:
                game = await self._backend.get_game(game_id)
                if player_id is None or game is None or player_id not in game.players:
                    raise SnapshotNotFoundError(game_id, SnapshotKind(kind).value)
                # Private saves are never cached; visibility is per caller
                return codec.to_token(snapshot.payload)
        except StorageError as e:
            logger.error(f"Failed to read {key}: {e}")
            raise InternalError("Failed to read save") from e

        token = codec.to_token(snapshot.payload)
        await self._cache.set(key, token, generation=generation)
        return token

    async def write(
        self,
        player_id: str,
        game_id: str,
        token: str,
        kind: SnapshotKind,
        ip: Optional[str] = None,
    ) -> str:
        """Validate and store a new snapshot; returns game_id.

        Raises:
            ValidationError: Undecodable payload, gameId mismatch, or the
                caller is not a member
            InternalError: Storage failure or retries exhausted
        """
        context = {"player_id": player_id, "game_id": game_id}
        try:
            decoded = codec.decode_save(token)
        except PayloadError as e:
            logger.warning(f"Rejected save from {player_id} for {game_id}: {e.message}")
            raise ValidationError(
                f"Invalid save payload: {e.message}", code="INVALID_PAYLOAD", details=context
            ) from e
        if decoded is None:
            raise ValidationError("Empty save payload", details=context)
        compressed, payload = decoded

        if extract_game_id(payload) != game_id:
            logger.warning(f"Rejected save from {player_id}: embedded gameId does not match {game_id}")
            raise ValidationError("Game ID mismatch", details=context)

        members = extract_human_player_ids(payload)
        if player_id not in members:
            logger.warning(f"Rejected save from {player_id} for {game_id}: not a player in the save")
            raise ValidationError("Player is not in this game", details=context)

        snapshot = SnapshotRecord(
            game_id=game_id,
            kind=SnapshotKind(kind),
            payload=compressed,
            turns=extract_turns(payload),
            created_player=player_id,
            created_ip=ip,
            is_private=not is_spectatable(payload),
        )

        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._commit(player_id, members, snapshot)
                break
            except StorageConflictError as e:
                if attempt > self.max_retries:
                    logger.error(
                        f"Save by {player_id} for {game_id} gave up after {attempt} attempts "
                        f"({time.monotonic() - started:.3f}s): {e}"
                    )
                    raise InternalError("Failed to store save", details=context) from e
                logger.info(f"Save conflict for {game_id}, retrying (attempt {attempt})")
            except StorageError as e:
                logger.error(
                    f"Save by {player_id} for {game_id} failed "
                    f"({time.monotonic() - started:.3f}s): {e}"
                )
                raise InternalError("Failed to store save", details=context) from e

        await self._cache.delete(_cache_key(game_id, kind))
        logger.debug(f"Stored {SnapshotKind(kind).value} save for {game_id} from {player_id}")
        return game_id

    async def _commit(self, player_id: str, members: list[str], snapshot: SnapshotRecord) -> None:
        game_id = snapshot.game_id
        now = utcnow()
        snapshot.created_at = now
        snapshot.id = None

        async with self._backend.transaction(game_id) as tx:
            game = await tx.get_game(game_id)
            if game is not None and len(game.players) > 1 and player_id not in game.players:
                logger.warning(f"Rejected save from {player_id}: not a recorded member of {game_id}")
                raise ValidationError(
                    "Player is not in this game",
                    details={"player_id": player_id, "game_id": game_id},
                )

            if game is None:
                game = GameRecord(
                    game_id=game_id,
                    created_player=player_id,
                    created_at=now,
                    updated_at=now,
                )
            game.players = list(members)
            game.updated_at = now
            if snapshot.kind == SnapshotKind.CONTENT:
                game.turns = snapshot.turns
            if not game.established and now - as_utc(game.created_at) > self.activity_window:
                game.established = True

            await tx.save_game(game)
            await tx.add_snapshot(snapshot)

    async def get_game(self, game_id: str) -> GameRecord:
        try:
            game = await self._backend.get_game(game_id)
        except StorageError as e:
            raise InternalError("Failed to load game") from e
        if game is None:
            raise GameNotFoundError(game_id)
        return game

    async def list_games(self, player_id: Optional[str] = None) -> list[GameRecord]:
        try:
            return await self._backend.list_games(player_id)
        except StorageError as e:
            raise InternalError("Failed to list games") from e

    async def list_turns(
        self, game_id: str, kind: SnapshotKind = SnapshotKind.CONTENT
    ) -> list[SnapshotRecord]:
        """Snapshot history (metadata only), oldest first."""
        try:
            return await self._backend.list_snapshots(game_id, kind)
        except StorageError as e:
            raise InternalError("Failed to list turns") from e

    async def export_turns(self, game_id: str) -> bytes:
        """Zip archive of the content history: game_{id}/turn_{turns}, one per turn.

        A turn uploaded more than once keeps its latest upload.

        Raises:
            SnapshotNotFoundError: The game has no content snapshots
        """
        try:
            history = await self._backend.list_snapshots(
                game_id, SnapshotKind.CONTENT, with_payload=True
            )
        except StorageError as e:
            raise InternalError("Failed to export turns") from e

        by_turn: dict[int, SnapshotRecord] = {}
        for snapshot in history:
            by_turn[snapshot.turns] = snapshot

        buffer = io.BytesIO()
        written = 0
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for turns in sorted(by_turn):
                try:
                    document = codec.pretty_json(by_turn[turns].payload)
                except (OSError, EOFError, zlib.error, ValueError) as e:
                    logger.warning(f"Skipping unreadable turn {turns} of {game_id}: {e}")
                    continue
                archive.writestr(f"game_{game_id}/turn_{turns}", document)
                written += 1
        if not written:
            raise SnapshotNotFoundError(game_id, SnapshotKind.CONTENT.value)
        logger.info(f"Exported {written} turns of {game_id}")
        return buffer.getvalue()

    async def delete_game(self, game_id: str) -> bool:
        try:
            deleted = await self._backend.delete_game(game_id)
        except StorageError as e:
            logger.error(f"Failed to delete game {game_id}: {e}")
            raise InternalError("Failed to delete game") from e
        for kind in SnapshotKind:
            await self._cache.delete(_cache_key(game_id, kind))
        if deleted:
            logger.info(f"Deleted game {game_id}")
        return deleted
