from __future__ import annotations

import base64
import hashlib

from langfuse_pipeline.media import MEDIA_TOKEN_PREFIX, LangfuseMedia, find_data_uris, redact_media

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"
PNG_URI = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")


def _expected_id(content: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(content).digest()).decode("ascii")[:22]


def test_media_id_and_tag():
    media = LangfuseMedia(base64_data_uri=PNG_URI)
    assert media.content_bytes == PNG_BYTES
    assert media.content_type == "image/png"
    assert media.id == _expected_id(PNG_BYTES)
    assert media.tag == (
        f"{MEDIA_TOKEN_PREFIX}type=image/png|id={_expected_id(PNG_BYTES)}|source=base64_data_uri@@@"
    )


def test_redact_string_replaces_each_occurrence():
    text = f"look {PNG_URI} and again {PNG_URI}"
    redacted = redact_media(text)
    assert "base64," not in redacted
    assert redacted.count(MEDIA_TOKEN_PREFIX) == 2


def test_redact_nested_structures_and_callback():
    seen = []
    value = {"messages": [{"content": [{"image_url": PNG_URI}, {"text": "hi"}]}], "n": 1}
    redacted = redact_media(value, on_media=seen.append)
    assert redacted["messages"][0]["content"][0]["image_url"].startswith(MEDIA_TOKEN_PREFIX)
    assert redacted["messages"][0]["content"][1] == {"text": "hi"}
    assert redacted["n"] == 1
    assert len(seen) == 1
    assert seen[0].content_bytes == PNG_BYTES


def test_redaction_is_idempotent():
    once = redact_media(f"img: {PNG_URI}")
    assert redact_media(once) == once


def test_invalid_base64_left_untouched():
    broken = "data:image/png;base64,abc"
    assert find_data_uris(broken) == [broken]
    assert redact_media(broken) == broken


def test_non_media_values_pass_through():
    assert redact_media(42) == 42
    assert redact_media("no media here") == "no media here"
    assert redact_media(("a", "b")) == ("a", "b")


def test_uri_whose_payload_prefixes_another_gets_its_own_token():
    short = "data:image/png;base64," + base64.b64encode(b"abc").decode("ascii")
    longer = "data:image/png;base64," + base64.b64encode(b"abcdef").decode("ascii")
    seen = []
    redacted = redact_media(f"{short} {longer}", on_media=seen.append)
    first, second = redacted.split(" ")
    assert first == LangfuseMedia(base64_data_uri=short).tag
    assert second == LangfuseMedia(base64_data_uri=longer).tag
    assert _expected_id(b"abc") != _expected_id(b"abcdef")
    assert "base64," not in redacted
    assert [m.content_bytes for m in seen] == [b"abc", b"abcdef"]


def test_repeated_uri_reports_media_once():
    seen = []
    redact_media(f"{PNG_URI} {PNG_URI}", on_media=seen.append)
    assert len(seen) == 1
