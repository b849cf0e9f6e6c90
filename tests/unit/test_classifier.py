import orjson
import pytest

from classifier import ERROR_PREFIX_LIMIT, MAX_JSON_DEPTH, classify_content, payload_data


def test_empty_content_has_no_payload():
    assert classify_content(b"") is None
    assert classify_content(None) is None


@pytest.mark.parametrize(
    "content",
    [
        b'{"a":1}',
        b'[1, 2, {"b": null}]',
        b'"just a string"',
        b"42",
        b'  {"spaced" :  true }  ',
    ],
)
def test_valid_json_is_kept_verbatim(content):
    assert classify_content(content) == content


def test_invalid_content_is_wrapped_in_error_envelope():
    payload = classify_content(b"not json")
    data = orjson.loads(payload)
    assert set(data) == {"error"}
    assert "not json" in data["error"]
    assert data["error"].startswith("content is not valid JSON: ")


def test_error_envelope_keeps_bounded_prefix():
    content = b"x" * (ERROR_PREFIX_LIMIT * 3)
    data = orjson.loads(classify_content(content))
    kept = data["error"].split(": ", 1)[1]
    assert kept == "x" * ERROR_PREFIX_LIMIT


def test_binary_garbage_still_produces_valid_json():
    content = bytes(range(256)) * 10
    payload = classify_content(content)
    data = orjson.loads(payload)
    assert "error" in data


def test_truncated_json_is_not_valid():
    data = payload_data(classify_content(b'{"a": 1'))
    assert data["error"].endswith('{"a": 1')


def test_payload_data_decodes():
    assert payload_data(None) is None
    assert payload_data(b'{"a":1}') == {"a": 1}


def test_nesting_up_to_depth_limit_kept_verbatim():
    content = b"[" * 500 + b"]" * 500
    assert classify_content(content) == content


def test_nesting_beyond_depth_limit_is_wrapped():
    content = b"[" * (MAX_JSON_DEPTH + 100) + b"]" * (MAX_JSON_DEPTH + 100)
    data = orjson.loads(classify_content(content))
    assert data["error"].startswith("content is not valid JSON: [[[")
