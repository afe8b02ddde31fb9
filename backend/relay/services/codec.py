"""Save token codec.

A token is base64(gzip(UTF-8 JSON)). Snapshots are stored as the gzip
bytes, so reads only need to_token() and never recompress.
"""
import base64
import binascii
import gzip
import json
import zlib
from typing import Any, Optional

from relay.core.exceptions import PayloadError


def compress(raw: bytes) -> bytes:
    return gzip.compress(raw)


def to_token(compressed: bytes) -> str:
    return base64.b64encode(compressed).decode("ascii")


def encode(raw: bytes) -> str:
    """gzip-compress raw JSON bytes and base64-encode the result."""
    return to_token(compress(raw))


def decompress_token(token: str) -> Optional[bytes]:
    """Return the gzip bytes carried by a token, validating base64 only."""
    token = (token or "").strip()
    if not token:
        return None
    try:
        return base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PayloadError(f"Invalid base64: {e}") from e


def _load(token: str) -> Optional[tuple[bytes, bytes, Any]]:
    """Return (gzip bytes, raw JSON bytes, parsed document), parsing once."""
    compressed = decompress_token(token)
    if compressed is None:
        return None
    try:
        raw = gzip.decompress(compressed)
    except (OSError, EOFError, zlib.error) as e:
        raise PayloadError(f"Invalid gzip stream: {e}") from e
    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise PayloadError(f"Invalid JSON: {e}") from e
    return compressed, raw, document


def decode(token: str) -> Optional[bytes]:
    """Reverse encode(); an empty token means "no payload".

    Raises:
        PayloadError: bad base64, malformed gzip stream, or non-JSON content
    """
    loaded = _load(token)
    return loaded[1] if loaded else None


def encode_json(obj: dict) -> str:
    return encode(json.dumps(obj, ensure_ascii=False).encode("utf-8"))


def _require_object(document: Any) -> dict:
    if not isinstance(document, dict):
        raise PayloadError("Save payload must be a JSON object")
    return document


def decode_json(token: str) -> Optional[dict]:
    """Decode a token into its JSON object."""
    loaded = _load(token)
    return _require_object(loaded[2]) if loaded else None


def decode_save(token: str) -> Optional[tuple[bytes, dict]]:
    """Decode an uploaded save into (gzip bytes to store, JSON object)."""
    loaded = _load(token)
    if loaded is None:
        return None
    return loaded[0], _require_object(loaded[2])


def pretty_json(compressed: bytes) -> str:
    """Render stored gzip bytes as indented JSON for exports."""
    return json.dumps(json.loads(gzip.decompress(compressed)), indent=2, ensure_ascii=False)
