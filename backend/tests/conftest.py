"""Pytest configuration and fixtures for backend tests."""
import os
from typing import Generator

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing app
os.environ["DEBUG"] = "true"
os.environ["STORE_BACKEND"] = "memory"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["PASSWORD_HASH_ROUNDS"] = "4"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "test-admin-password"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"

from relay.main import app
from relay.services import codec
from relay.services.cache import MemoryTTLCache
from relay.services.save_coordinator import SaveCoordinator
from relay.storage.memory import InMemoryBackend


PLAYER_A = "11111111-1111-1111-1111-111111111111"
PLAYER_B = "22222222-2222-2222-2222-222222222222"
PLAYER_C = "33333333-3333-3333-3333-333333333333"
GAME_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"

ADMIN_AUTH = ("admin", "test-admin-password")
UNCIV_HEADERS = {"User-Agent": "Unciv/4.11.0-GNU-Linux"}


def make_save(game_id: str = GAME_ID, humans=(PLAYER_A,), turns: int = 1, **params) -> dict:
    """Minimal Unciv save document with the given human players."""
    players = [{"playerType": "Human", "playerId": pid, "chosenCiv": f"Civ{i}"} for i, pid in enumerate(humans)]
    players.append({"playerType": "AI", "playerId": "", "chosenCiv": "Barbarians"})
    game_parameters = {"players": players}
    game_parameters.update(params)
    return {"gameId": game_id, "turns": turns, "gameParameters": game_parameters}


def make_token(game_id: str = GAME_ID, humans=(PLAYER_A,), turns: int = 1, **params) -> str:
    return codec.encode_json(make_save(game_id, humans, turns, **params))


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def coordinator(backend) -> SaveCoordinator:
    return SaveCoordinator(backend, MemoryTTLCache(ttl_seconds=60), max_retries=3)


@pytest.fixture(scope="function")
def client() -> Generator[TestClient, None, None]:
    """Test client with a fresh in-memory store per test (lifespan runs on enter)."""
    with TestClient(app, headers=UNCIV_HEADERS) as c:
        yield c
