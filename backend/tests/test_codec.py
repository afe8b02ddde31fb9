"""Tests for the save token codec."""
import base64
import gzip
import json
from unittest.mock import patch

import pytest

from relay.core.exceptions import PayloadError, ValidationError
from relay.services import codec


class TestCodec:
    """encode/decode of base64(gzip(json)) tokens."""

    def test_round_trip(self):
        raw = json.dumps({"gameId": "x", "turns": 3, "civilizations": [{"name": "Rome"}]}).encode()
        assert codec.decode(codec.encode(raw)) == raw

    def test_round_trip_json(self):
        payload = {"gameId": "x", "nested": {"list": [1, 2, 3]}, "text": "Zürich"}
        assert codec.decode_json(codec.encode_json(payload)) == payload

    def test_token_is_base64_of_gzip(self):
        token = codec.encode(b'{"a": 1}')
        assert gzip.decompress(base64.b64decode(token)) == b'{"a": 1}'

    def test_empty_token_is_no_payload(self):
        assert codec.decode("") is None
        assert codec.decode("   ") is None
        assert codec.decode_json("") is None

    def test_invalid_base64(self):
        with pytest.raises(PayloadError):
            codec.decode("not base64 at all!!")

    def test_invalid_gzip(self):
        token = base64.b64encode(b"plain bytes, not gzip").decode()
        with pytest.raises(PayloadError):
            codec.decode(token)

    def test_truncated_gzip(self):
        compressed = gzip.compress(b'{"gameId": "x"}')
        token = base64.b64encode(compressed[:-6]).decode()
        with pytest.raises(PayloadError):
            codec.decode(token)

    def test_non_json_content(self):
        token = codec.encode(b"{not json")
        with pytest.raises(PayloadError):
            codec.decode(token)

    def test_non_object_document(self):
        token = codec.encode(b"[1, 2, 3]")
        assert codec.decode(token) == b"[1, 2, 3]"
        with pytest.raises(PayloadError):
            codec.decode_json(token)

    def test_payload_error_is_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            codec.decode("@@@@")
        assert exc_info.value.http_status == 400
        assert exc_info.value.code == "INVALID_PAYLOAD"

    def test_to_token_reuses_stored_bytes(self):
        compressed = codec.compress(b'{"a": 1}')
        token = codec.to_token(compressed)
        assert codec.decompress_token(token) == compressed

    def test_decode_json_parses_once(self):
        token = codec.encode_json({"gameId": "x", "turns": 7})
        with patch("relay.services.codec.json.loads", wraps=json.loads) as loads:
            assert codec.decode_json(token) == {"gameId": "x", "turns": 7}
        assert loads.call_count == 1

    def test_decode_save_returns_stored_bytes(self):
        token = codec.encode_json({"gameId": "x"})
        compressed, payload = codec.decode_save(token)
        assert compressed == base64.b64decode(token)
        assert payload == {"gameId": "x"}
        assert codec.decode_save("") is None

    def test_decode_save_rejects_non_object(self):
        with pytest.raises(PayloadError):
            codec.decode_save(codec.encode(b'"just a string"'))

    def test_pretty_json(self):
        compressed = codec.compress(b'{"gameId":"x","turns":2}')
        assert codec.pretty_json(compressed) == '{\n  "gameId": "x",\n  "turns": 2\n}'
