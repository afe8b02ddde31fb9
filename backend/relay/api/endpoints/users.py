"""Player-facing management endpoints."""
import logging

from fastapi import APIRouter, Depends, Response

from relay.api.dependencies import Caller, get_caller, get_coordinator, require_player
from relay.core.exceptions import ForbiddenError, GameNotFoundError
from relay.schemas.enums import SnapshotKind
from relay.schemas.game import GameInfo, TurnInfo
from relay.services.save_coordinator import SaveCoordinator

router = APIRouter(tags=["users"])
logger = logging.getLogger(__name__)


@router.get("/users/games", response_model=list[GameInfo])
async def list_my_games(
    player_id: str = Depends(require_player),
    coordinator: SaveCoordinator = Depends(get_coordinator),
):
    """
    Games the caller is a recorded member of.
    GET /api/users/games
    """
    games = await coordinator.list_games(player_id)
    return [GameInfo.model_validate(game) for game in games]


@router.get("/games/{game_id}/turns", response_model=list[TurnInfo])
async def list_game_turns(
    game_id: str,
    kind: SnapshotKind = SnapshotKind.CONTENT,
    caller: Caller = Depends(get_caller),
    coordinator: SaveCoordinator = Depends(get_coordinator),
):
    """
    Snapshot history of a game, oldest first (metadata only).
    GET /api/games/{game_id}/turns

    Security: members of the game or admin
    """
    game = await coordinator.get_game(game_id)
    if not caller.is_admin and caller.player_id not in game.players:
        # Do not reveal that the game exists
        raise GameNotFoundError(game_id)
    turns = await coordinator.list_turns(game_id, kind)
    return [TurnInfo.model_validate(turn) for turn in turns]


@router.get("/games/{game_id}/download")
async def download_game(
    game_id: str,
    caller: Caller = Depends(get_caller),
    coordinator: SaveCoordinator = Depends(get_coordinator),
):
    """
    Zip export of every content turn of a game, as indented JSON.
    GET /api/games/{game_id}/download

    Security: members of the game or admin
    """
    game = await coordinator.get_game(game_id)
    if not caller.is_admin and caller.player_id not in game.players:
        raise GameNotFoundError(game_id)
    archive = await coordinator.export_turns(game_id)
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="game-{game_id}.zip"'},
    )


@router.delete("/games/{game_id}", status_code=204)
async def delete_game(
    game_id: str,
    caller: Caller = Depends(get_caller),
    coordinator: SaveCoordinator = Depends(get_coordinator),
):
    """
    Delete a game with all of its snapshots.
    DELETE /api/games/{game_id}

    Security: the player who created the game, or admin
    """
    game = await coordinator.get_game(game_id)
    if not caller.is_admin and caller.player_id != game.created_player:
        raise ForbiddenError("Only the game creator can delete it")
    await coordinator.delete_game(game_id)
    logger.info(f"Game {game_id} deleted by {'admin' if caller.is_admin else caller.player_id}")
