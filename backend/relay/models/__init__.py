# Models package
from .base import Base
from .player import Player
from .game import Game, GamePlayer, Snapshot
