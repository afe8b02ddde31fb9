"""Unciv save file endpoints (/files/{game_id}).

A path id ending in _Preview addresses the preview stream of the game.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from relay.api.dependencies import (
    get_client_ip, get_coordinator, read_body, require_player, require_unciv_client,
)
from relay.core.config import settings
from relay.core.exceptions import ValidationError
from relay.services.game_ids import parse_game_id
from relay.services.save_coordinator import SaveCoordinator

router = APIRouter(tags=["files"], dependencies=[Depends(require_unciv_client)])
logger = logging.getLogger(__name__)


@router.get("/files/{game_id}", response_class=PlainTextResponse)
async def get_file(
    game_id: str,
    player_id: str = Depends(require_player),
    coordinator: SaveCoordinator = Depends(get_coordinator),
):
    """Latest save token for the game."""
    base_id, kind = parse_game_id(game_id)
    token = await coordinator.read(base_id, kind, player_id)
    return PlainTextResponse(token)


@router.put("/files/{game_id}", response_class=PlainTextResponse)
async def put_file(
    game_id: str,
    request: Request,
    player_id: str = Depends(require_player),
    coordinator: SaveCoordinator = Depends(get_coordinator),
):
    """Upload a save token; the body is the token as plain text."""
    base_id, kind = parse_game_id(game_id)
    body = await read_body(request, settings.MAX_BODY_SIZE)
    if not body.strip():
        raise ValidationError(
            "Save data must not be empty",
            details={"player_id": player_id, "game_id": base_id},
        )
    try:
        token = body.decode("ascii")
    except UnicodeDecodeError as e:
        raise ValidationError(
            "Save data must be base64 text",
            code="INVALID_PAYLOAD",
            details={"player_id": player_id, "game_id": base_id},
        ) from e

    stored = await coordinator.write(player_id, base_id, token, kind, get_client_ip(request))
    return PlainTextResponse(stored)
