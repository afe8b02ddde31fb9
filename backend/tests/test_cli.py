"""Tests for the maintenance command line."""
from unittest.mock import patch

import pytest

from relay import cli
from relay.storage.memory import InMemoryBackend


class ClosingBackend(InMemoryBackend):
    def __init__(self):
        super().__init__()
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class TestCli:

    def test_sweep_prints_counts(self, capsys):
        backend = ClosingBackend()
        with patch.object(cli, "create_backend", return_value=backend):
            assert cli.main(["sweep"]) == 0
        assert capsys.readouterr().out.strip() == "deleted_games=0, deleted_players=0, deleted_snapshots=0"
        assert backend.closed is True

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.main([])
