"""Relay enums definition."""
from enum import Enum


class SnapshotKind(str, Enum):
    """Independent write streams per game."""
    CONTENT = "content"  # full turn data
    PREVIEW = "preview"  # lightweight summary polled by clients


class AuthStatus(str, Enum):
    """Outcome of checking a Basic credential against the stored secret."""
    VALID = "valid"
    INVALID = "invalid"
    MISSING = "missing"  # well-formed credential, no stored secret yet
