"""Base64 media detection and replacement with Langfuse media tokens.

Span payloads frequently embed images or audio as base64 data URIs
(``data:image/png;base64,iVBOR...``). Shipping them inline bloats every
export and leaks raw bytes into the trace store, so the span processor
replaces each data URI with a deterministic reference token:

    @@@langfuseMedia:type=<mime>|id=<media id>|source=base64_data_uri@@@

Media id:
    First 22 characters of the URL-safe base64 SHA-256 digest of the decoded
    bytes. Identical content always maps to the same id, so two occurrences
    of the same image in one field share a token and re-running redaction is
    a no-op.

Traversal:
    - Strings are scanned with a regex; each distinct data URI is replaced.
    - Mappings and sequences are walked recursively (bounded depth 25).
    - URIs that fail to decode are left in place and logged; the rest of
      the value is still redacted.

Public API:
    LangfuseMedia: parsed media item (bytes, content type, hash, id, tag)
    find_data_uris: distinct data URIs in a string, in order of appearance
    redact_media: recursively replace data URIs with media tokens
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from typing import Any, Callable, Dict, List, Optional

__all__ = [
    "LangfuseMedia",
    "MEDIA_TOKEN_PREFIX",
    "find_data_uris",
    "redact_media",
]

logger = logging.getLogger(__name__)

MEDIA_TOKEN_PREFIX = "@@@langfuseMedia:"
_DATA_URI_RE = re.compile(r"data:[^;,\s\"']+;base64,[A-Za-z0-9+/]+=*")
_MAX_DEPTH = 25


class LangfuseMedia:
    """A media item parsed from a base64 data URI or given as raw bytes."""

    def __init__(
        self,
        *,
        base64_data_uri: Optional[str] = None,
        content_bytes: Optional[bytes] = None,
        content_type: Optional[str] = None,
        source: Optional[str] = None,
    ) -> None:
        self.content_bytes: Optional[bytes] = None
        self.content_type: Optional[str] = None
        if base64_data_uri is not None:
            self.source = source or "base64_data_uri"
            self.content_bytes, self.content_type = self._parse_base64_data_uri(base64_data_uri)
        else:
            self.source = source or "bytes"
            self.content_bytes = content_bytes
            self.content_type = content_type

    @staticmethod
    def _parse_base64_data_uri(data: str) -> tuple[Optional[bytes], Optional[str]]:
        try:
            if not data.startswith("data:"):
                raise ValueError("Data URI does not start with 'data:'")
            header, _, payload = data[5:].partition(",")
            if not header or not payload:
                raise ValueError("Invalid URI")
            header_parts = header.split(";")
            if "base64" not in header_parts:
                raise ValueError("Data is not base64 encoded")
            content_type = header_parts[0]
            if not content_type:
                raise ValueError("Content type is empty")
            return base64.b64decode(payload, validate=True), content_type
        except (ValueError, binascii.Error) as e:
            logger.warning("Error parsing base64 data URI: %s", e)
            return None, None

    @property
    def content_length(self) -> Optional[int]:
        return len(self.content_bytes) if self.content_bytes is not None else None

    @property
    def content_sha256_hash(self) -> Optional[str]:
        """Standard base64 encoded SHA-256 digest of the content."""
        if self.content_bytes is None:
            return None
        return base64.b64encode(hashlib.sha256(self.content_bytes).digest()).decode("ascii")

    @property
    def id(self) -> Optional[str]:
        digest = self.content_sha256_hash
        if digest is None:
            return None
        return digest.replace("+", "-").replace("/", "_")[:22]

    @property
    def tag(self) -> Optional[str]:
        media_id = self.id
        if not self.content_type or not self.source or not media_id:
            return None
        return f"{MEDIA_TOKEN_PREFIX}type={self.content_type}|id={media_id}|source={self.source}@@@"

    def __repr__(self) -> str:
        return f"LangfuseMedia(type={self.content_type!r}, id={self.id!r}, bytes={self.content_length})"


def find_data_uris(value: str) -> List[str]:
    return list(dict.fromkeys(_DATA_URI_RE.findall(value)))


def _redact_string(value: str, on_media: Optional[Callable[[LangfuseMedia], None]]) -> str:
    if "data:" not in value:
        return value
    tags: Dict[str, Optional[str]] = {}

    def _replace(match: "re.Match[str]") -> str:
        uri = match.group(0)
        if uri not in tags:
            media = LangfuseMedia(base64_data_uri=uri)
            tags[uri] = media.tag
            if media.tag is None:
                logger.warning("Failed to create Langfuse media tag. Skipping media item.")
            elif on_media is not None:
                on_media(media)
        return tags[uri] or uri

    # one pass: each match is replaced on its own, never via str.replace
    return _DATA_URI_RE.sub(_replace, value)


def redact_media(
    value: Any,
    on_media: Optional[Callable[[LangfuseMedia], None]] = None,
    _depth: int = 0,
) -> Any:
    """Return `value` with every embedded base64 data URI replaced by a media token.

    `on_media` is called once per replaced media item (used to schedule the
    upload of the original bytes); the returned value never contains them.
    """
    if _depth > _MAX_DEPTH:
        return value
    if isinstance(value, str):
        return _redact_string(value, on_media)
    if isinstance(value, dict):
        out: Dict[Any, Any] = {}
        for k, v in value.items():
            out[k] = redact_media(v, on_media, _depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        items = [redact_media(x, on_media, _depth + 1) for x in value]
        return type(value)(items) if isinstance(value, tuple) else items
    return value
