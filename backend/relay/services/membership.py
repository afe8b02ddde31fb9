"""Reads player membership and metadata out of a decoded save.

Saves are produced by third-party clients, so every accessor tolerates
missing or mistyped fields and falls back to a neutral value.
"""


def _game_parameters(payload) -> dict:
    if not isinstance(payload, dict):
        return {}
    params = payload.get("gameParameters")
    return params if isinstance(params, dict) else {}


def extract_human_player_ids(payload) -> list[str]:
    """Human player ids in declaration order, without duplicates."""
    players = _game_parameters(payload).get("players")
    if not isinstance(players, list):
        return []

    ids: list[str] = []
    for player in players:
        if not isinstance(player, dict) or player.get("playerType") != "Human":
            continue
        player_id = player.get("playerId")
        if isinstance(player_id, str) and player_id and player_id not in ids:
            ids.append(player_id)
    return ids


def is_spectatable(payload) -> bool:
    """False only when the save explicitly sets anyoneCanSpectate to false."""
    return _game_parameters(payload).get("anyoneCanSpectate", True) is not False


def extract_turns(payload) -> int:
    turns = payload.get("turns") if isinstance(payload, dict) else None
    # bool is an int subclass
    if isinstance(turns, int) and not isinstance(turns, bool):
        return turns
    return 0


def extract_game_id(payload) -> str:
    game_id = payload.get("gameId") if isinstance(payload, dict) else None
    return game_id if isinstance(game_id, str) else ""
