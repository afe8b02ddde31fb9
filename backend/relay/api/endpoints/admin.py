"""Admin management endpoints.

Security: every route requires the admin Basic credential.
"""
import logging

from fastapi import APIRouter, Depends

from relay.api.dependencies import (
    get_backend, get_coordinator, get_sweeper, require_admin,
)
from relay.core.exceptions import GameNotFoundError, InternalError, PlayerNotFoundError, StorageError
from relay.schemas.game import (
    GameInfo, PlayerInfo, StatsResponse, SweepResponse, UpdateInfoRequest,
)
from relay.services.retention_sweeper import RetentionSweeper
from relay.services.save_coordinator import SaveCoordinator
from relay.storage.backend import SaveStoreBackend

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.get("/games", response_model=list[GameInfo])
async def list_games(coordinator: SaveCoordinator = Depends(get_coordinator)):
    games = await coordinator.list_games()
    return [GameInfo.model_validate(game) for game in games]


@router.put("/games/{game_id}", response_model=GameInfo)
async def update_game(
    game_id: str,
    body: UpdateInfoRequest,
    backend: SaveStoreBackend = Depends(get_backend),
    coordinator: SaveCoordinator = Depends(get_coordinator),
):
    """
    Update whitelist flag and remark of a game.
    PUT /api/admin/games/{game_id}

    Whitelisted games are never removed by the retention sweeper.
    """
    try:
        updated = await backend.update_game_info(game_id, body.whitelisted, body.remark)
    except StorageError as e:
        raise InternalError("Failed to update game") from e
    if not updated:
        raise GameNotFoundError(game_id)
    logger.info(f"Admin updated game {game_id}: whitelisted={body.whitelisted}")
    return GameInfo.model_validate(await coordinator.get_game(game_id))


@router.get("/players", response_model=list[PlayerInfo])
async def list_players(backend: SaveStoreBackend = Depends(get_backend)):
    try:
        players = await backend.list_players()
    except StorageError as e:
        raise InternalError("Failed to list players") from e
    return [PlayerInfo.model_validate(player) for player in players]


@router.put("/players/{player_id}", response_model=PlayerInfo)
async def update_player(
    player_id: str,
    body: UpdateInfoRequest,
    backend: SaveStoreBackend = Depends(get_backend),
):
    """
    Update whitelist flag and remark of a player.
    PUT /api/admin/players/{player_id}
    """
    try:
        updated = await backend.update_player_info(player_id, body.whitelisted, body.remark)
        player = await backend.get_player(player_id) if updated else None
    except StorageError as e:
        raise InternalError("Failed to update player") from e
    if player is None:
        raise PlayerNotFoundError(player_id)
    logger.info(f"Admin updated player {player_id}: whitelisted={body.whitelisted}")
    return PlayerInfo.model_validate(player)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(backend: SaveStoreBackend = Depends(get_backend)):
    try:
        stats = await backend.stats()
    except StorageError as e:
        raise InternalError("Failed to collect stats") from e
    return StatsResponse.model_validate(stats)


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(sweeper: RetentionSweeper = Depends(get_sweeper)):
    """
    Run a retention sweep now.
    POST /api/admin/sweep
    """
    try:
        result = await sweeper.sweep()
    except StorageError as e:
        logger.error(f"Manual sweep failed: {e}")
        raise InternalError("Sweep failed") from e
    return SweepResponse(**result.to_dict())
