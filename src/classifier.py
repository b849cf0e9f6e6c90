"""
Content Classifier
Turns raw captured request/file bytes into a payload that is always valid JSON.
"""

from typing import Any, Optional

import orjson

ERROR_PREFIX_LIMIT = 10_000
# orjson rejects documents nested this deep; they are wrapped like invalid JSON
MAX_JSON_DEPTH = 1024
INVALID_JSON_DESCRIPTION = "content is not valid JSON"


def is_valid_json(content: bytes) -> bool:
    """Check whether content parses as a JSON document."""
    try:
        orjson.loads(content)
    except orjson.JSONDecodeError:
        return False
    return True


def wrap_invalid(content: bytes) -> bytes:
    """
    Build the error envelope for content that is not JSON.

    Only the first ERROR_PREFIX_LIMIT bytes are kept. The prefix is decoded
    before serialization so the envelope never depends on the raw bytes
    being valid UTF-8.
    """
    prefix = content[:ERROR_PREFIX_LIMIT].decode("utf-8", errors="replace")
    return orjson.dumps({"error": f"{INVALID_JSON_DESCRIPTION}: {prefix}"})


def classify_content(content: Optional[bytes]) -> Optional[bytes]:
    """
    Classify captured content into a payload.

    Args:
        content: Raw captured bytes, possibly empty

    Returns:
        None for empty content, the content itself when it is valid JSON,
        otherwise a JSON error envelope holding a bounded prefix of it.
    """
    if not content:
        return None
    if is_valid_json(content):
        return bytes(content)
    return wrap_invalid(content)


def payload_data(payload: Optional[bytes]) -> Any:
    """Decode a classified payload into Python data."""
    if payload is None:
        return None
    return orjson.loads(payload)
