"""Langfuse Media API integration for media redacted out of span payloads.

The span processor replaces every base64 data URI with a media token (see
`langfuse_pipeline.media`). This module makes those tokens resolvable by
uploading the original bytes, following the Langfuse multi-modality flow:

1. ``POST /api/public/media`` with traceId, observationId, contentType,
   contentLength, sha256Hash and field. The response carries the server
   media id and, unless the content is already known, a presigned
   ``uploadUrl``.
2. If ``uploadUrl`` is present the decoded bytes are PUT exactly once
   (retried with exponential backoff on transport errors / non-2xx).
3. ``PATCH /api/public/media/{id}`` reports upload status and duration.

Uploads run on a small thread pool so ``on_end`` never blocks on the
network. Failures are logged and dropped; the exported span keeps its token
either way. ``flush`` waits for the uploads scheduled so far.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Optional, Set, cast

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .media import LangfuseMedia

logger = logging.getLogger(__name__)

__all__ = ["MediaUploadError", "MediaClient", "MediaUploader"]


class MediaUploadError(RuntimeError):
    pass


class MediaClient:
    """Thin httpx wrapper around the three Media API calls."""

    def __init__(self, *, base_url: str, public_key: str, secret_key: str, timeout: float = 5):
        self.base = base_url.rstrip("/")
        self.auth = (public_key, secret_key)
        self.timeout = timeout

    def create_media(
        self,
        *,
        trace_id: str,
        observation_id: Optional[str],
        content_type: str,
        content_length: int,
        sha256_b64: str,
        field: str,
    ) -> dict[str, Any]:
        url = f"{self.base}/api/public/media"
        payload: dict[str, Any] = {
            "traceId": trace_id,
            "contentType": content_type,
            "contentLength": content_length,
            "sha256Hash": sha256_b64,
            "field": field,
        }
        if observation_id:
            payload["observationId"] = observation_id
        try:
            resp = httpx.post(url, json=payload, auth=self.auth, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise MediaUploadError(f"media create request failed: {e}") from e
        if resp.status_code >= 400:
            raise MediaUploadError(
                f"media create failed status={resp.status_code} body={resp.text[:500]}"
            )
        try:
            return cast(dict[str, Any], resp.json())
        except ValueError as e:
            raise MediaUploadError(f"invalid media create JSON: {e}") from e

    @retry(
        reraise=True,
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(MediaUploadError),
    )
    def upload_bytes(
        self, upload_url: str, data: bytes, *, content_type: str, sha256_b64: str
    ) -> httpx.Response:
        """PUT the content to the presigned URL.

        S3 presigned URLs sign the checksum header; Azure Blob URLs reject a
        PUT without ``x-ms-blob-type``. Both headers are always sent.
        """
        headers = {
            "Content-Type": content_type,
            "x-amz-checksum-sha256": sha256_b64,
            "x-ms-blob-type": "BlockBlob",
        }
        try:
            resp = httpx.put(upload_url, content=data, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise MediaUploadError(f"media upload failed: {e}") from e
        if resp.status_code not in (200, 201):
            raise MediaUploadError(
                f"media upload failed status={resp.status_code} body={resp.text[:300]}"
            )
        return resp

    def patch_media_status(
        self,
        *,
        media_id: str,
        upload_status: int,
        upload_error: Optional[str] = None,
        upload_time_ms: Optional[int] = None,
    ) -> None:
        url = f"{self.base}/api/public/media/{media_id}"
        body = {
            "uploadedAt": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "uploadHttpStatus": upload_status,
            "uploadHttpError": upload_error,
            "uploadTimeMs": upload_time_ms,
        }
        try:
            resp = httpx.patch(url, json=body, auth=self.auth, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise MediaUploadError(f"media status patch failed: {e}") from e
        if resp.status_code >= 400:
            raise MediaUploadError(
                f"media status patch failed status={resp.status_code} body={resp.text[:300]}"
            )


class MediaUploader:
    """Schedules media uploads in the background and tracks them for flushing."""

    def __init__(self, client: MediaClient, *, max_bytes: int = 25_000_000, max_workers: int = 2):
        self._client = client
        self._max_bytes = max_bytes
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="langfuse-media")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._shutdown = False

    def schedule(self, media: LangfuseMedia, *, trace_id: str, observation_id: Optional[str], field: str) -> None:
        with self._lock:
            if self._shutdown:
                logger.warning("Media uploader is shut down; dropping upload of %r", media)
                return
            future = self._executor.submit(
                self._process, media, trace_id=trace_id, observation_id=observation_id, field=field
            )
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _process(self, media: LangfuseMedia, *, trace_id: str, observation_id: Optional[str], field: str) -> None:
        try:
            self._upload(media, trace_id=trace_id, observation_id=observation_id, field=field)
        except Exception:
            logger.exception("Error processing media item %r", media)

    def _upload(self, media: LangfuseMedia, *, trace_id: str, observation_id: Optional[str], field: str) -> None:
        if (
            media.content_bytes is None
            or not media.content_type
            or not media.content_sha256_hash
            or media.content_length is None
        ):
            return
        if media.content_length > self._max_bytes:
            logger.warning(
                "media skip oversize id=%s bytes=%d cap=%d", media.id, media.content_length, self._max_bytes
            )
            return
        created = self._client.create_media(
            trace_id=trace_id,
            observation_id=observation_id,
            content_type=media.content_type,
            content_length=media.content_length,
            sha256_b64=media.content_sha256_hash,
            field=field,
        )
        upload_url = created.get("uploadUrl")
        media_id = created.get("mediaId") or created.get("id")
        if not upload_url:
            logger.debug("Media %s already uploaded. Skipping duplicate upload.", media_id)
            return
        if media_id != media.id:
            logger.error(
                "Media integrity error: id mismatch between local (%s) and server (%s); upload cancelled",
                media.id,
                media_id,
            )
            return
        started = time.monotonic()
        try:
            resp = self._client.upload_bytes(
                upload_url,
                media.content_bytes,
                content_type=media.content_type,
                sha256_b64=media.content_sha256_hash,
            )
            status, error = resp.status_code, None
        except MediaUploadError as e:
            status, error = 500, str(e)
        self._client.patch_media_status(
            media_id=media_id,
            upload_status=status,
            upload_error=error,
            upload_time_ms=int((time.monotonic() - started) * 1000),
        )
        logger.debug("Media upload status reported for %s status=%s", media_id, status)

    def flush(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
        self.flush()
        self._executor.shutdown(wait=True)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)
