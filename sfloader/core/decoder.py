"""
Turns raw payload bytes into a typed preset.

Payloads are structured JSON documents validated with pydantic; payload content
is never evaluated as code.
"""

import logging

from pydantic import ValidationError

from sfloader.exceptions import DecodeError
from sfloader.models.descriptor import Payload
from sfloader.models.preset import SoundfontPreset

log = logging.getLogger(__name__)


def _summarize(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "document"
    more = f" (+{error.error_count() - 1} more)" if error.error_count() > 1 else ""
    return f"{location}: {first.get('msg', 'invalid')}{more}"


def decode_payload(key: str, data: bytes, source: str | None = None) -> Payload:
    """
    Decodes raw bytes into a Payload.

    Args:
        key: Resource key the bytes belong to.
        data: Raw JSON document.
        source: URL the bytes were fetched from, if known.

    Raises:
        DecodeError: If the bytes are empty, not JSON, or not a valid preset.
    """
    if not data:
        raise DecodeError(key, "empty payload")
    try:
        preset = SoundfontPreset.model_validate_json(data)
    except ValidationError as e:
        raise DecodeError(key, _summarize(e)) from e
    log.debug(f"Decoded '{key}' with {len(preset.zones)} zones.")
    return Payload(key=key, data=bytes(data), preset=preset, source=source)
