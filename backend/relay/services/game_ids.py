"""Game id parsing for /files paths."""
import re

from relay.core.exceptions import ValidationError
from relay.schemas.enums import SnapshotKind

PREVIEW_SUFFIX = "_Preview"

GAME_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-(?:[0-9a-f]{4}-){3}[0-9a-f]{12}(?:_Preview)?$"
)
PLAYER_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-(?:[0-9a-f]{4}-){3}[0-9a-f]{12}$", re.IGNORECASE
)


def parse_game_id(raw: str) -> tuple[str, SnapshotKind]:
    """Split a path id into (base game id, snapshot kind).

    Raises:
        ValidationError: If the id is not a lowercase UUID with an optional
            _Preview suffix
    """
    if not raw or not GAME_ID_PATTERN.fullmatch(raw):
        raise ValidationError("Invalid game ID", details={"game_id": raw})
    if raw.endswith(PREVIEW_SUFFIX):
        return raw[: -len(PREVIEW_SUFFIX)], SnapshotKind.PREVIEW
    return raw, SnapshotKind.CONTENT


def is_player_id(value: str) -> bool:
    return bool(value) and PLAYER_ID_PATTERN.fullmatch(value) is not None
