"""Tests for payload decoding."""

import pytest

from sfloader.core.decoder import decode_payload
from sfloader.exceptions import DecodeError

from .conftest import preset_bytes


class TestDecodePayload:
    """Test decode_payload."""

    def test_valid_payload(self):
        """A well-formed document decodes into a typed preset."""
        data = preset_bytes("piano", zones=3)
        payload = decode_payload("piano", data, "https://cdn.example/piano.json")
        assert payload.key == "piano"
        assert payload.data == data
        assert payload.size == len(data)
        assert len(payload.preset.zones) == 3
        assert payload.source_host == "cdn.example"

    def test_source_host_defaults_to_cache(self):
        payload = decode_payload("piano", preset_bytes())
        assert payload.source_host == "cache"

    def test_empty_payload(self):
        with pytest.raises(DecodeError, match="empty payload"):
            decode_payload("piano", b"")

    def test_not_json(self):
        """Script-style payloads are rejected rather than evaluated."""
        with pytest.raises(DecodeError) as exc_info:
            decode_payload("piano", b"var _tone_0000 = {zones: []};")
        assert exc_info.value.key == "piano"

    def test_structurally_invalid(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_payload("piano", b'{"zones": [{"keyRangeLow": 0}]}')
        assert "zones" in exc_info.value.reason

    def test_missing_zones(self):
        with pytest.raises(DecodeError):
            decode_payload("piano", b"{}")
