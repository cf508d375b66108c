"""
Streaming delivery of stored objects.

Builds the HTTP response for a download or preview:
- 304 when If-None-Match matches the content-hash ETag
- 206 partial content for byte ranges (only for streaming media or objects
  above ``range_threshold_bytes``), 416 for unsatisfiable ranges
- inline disposition for previews, attachment for downloads

The body is a FileTransfer: an async chunk iterator over an anyio file handle
that stops on client disconnect, cancellation, early close, or the preview
timeout, and always releases the handle. Stop reasons are recorded on the
transfer and logged; none of them is retried.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import quote

import anyio
from starlette.responses import Response, StreamingResponse
from werkzeug.http import parse_etags, parse_range_header, quote_etag

from filevault.core.config import Settings
from filevault.models.file import FileMeta
from filevault.services.storage import StorageAdapter

logger = logging.getLogger(__name__)

STREAMING_MEDIA_PREFIXES = ("video/", "audio/")

DisconnectProbe = Callable[[], Awaitable[bool]]


class FileTransfer:
    """Chunked read of ``length`` bytes starting at ``start``."""

    def __init__(
        self,
        path: Path,
        start: int = 0,
        length: Optional[int] = None,
        chunk_size: int = 64 * 1024,
        timeout: Optional[float] = None,
        is_disconnected: Optional[DisconnectProbe] = None,
        label: str = "",
    ):
        self.path = Path(path)
        self.start = start
        self.length = length if length is not None else self.path.stat().st_size - start
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.label = label or self.path.name
        self._is_disconnected = is_disconnected
        self._iterator: Optional[AsyncIterator[bytes]] = None

        self.bytes_sent = 0
        self.completed = False
        self.released = False
        self.cancel_reason: Optional[str] = None

    def cancel(self, reason: str) -> None:
        if self.cancel_reason is None:
            self.cancel_reason = reason
            logger.info(
                f"Transfer of {self.label} stopped ({reason}) after {self.bytes_sent} bytes"
            )

    def __aiter__(self) -> AsyncIterator[bytes]:
        self._iterator = self._chunks()
        return self._iterator

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()

    async def _chunks(self) -> AsyncIterator[bytes]:
        deadline = anyio.current_time() + self.timeout if self.timeout else None
        try:
            async with await anyio.open_file(self.path, "rb") as handle:
                await handle.seek(self.start)
                remaining = self.length
                while remaining > 0:
                    if deadline is not None and anyio.current_time() >= deadline:
                        self.cancel("timeout")
                        return
                    if self._is_disconnected is not None and await self._is_disconnected():
                        self.cancel("client_disconnect")
                        return

                    chunk = await handle.read(min(self.chunk_size, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    self.bytes_sent += len(chunk)
                    yield chunk
            self.completed = True
        except GeneratorExit:
            self.cancel("closed_early")
            raise
        except anyio.get_cancelled_exc_class():
            self.cancel("request_aborted")
            raise
        except OSError:
            self.cancel("stream_error")
            logger.exception(f"Error while streaming {self.label}")
            raise
        finally:
            self.released = True


class FileStreamResponse(StreamingResponse):
    """StreamingResponse that closes its transfer however the response ends."""

    def __init__(self, transfer: FileTransfer, **kwargs):
        super().__init__(transfer, **kwargs)
        self.transfer = transfer

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except OSError:
            self.transfer.cancel("response_error")
            raise
        finally:
            with anyio.CancelScope(shield=True):
                await self.transfer.aclose()


def content_disposition(filename: str, inline: bool = False) -> str:
    disposition = "inline" if inline else "attachment"
    fallback = filename.replace('"', "").replace("\\", "")
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def supports_range(mimetype: Optional[str], size: int, settings: Settings) -> bool:
    return (mimetype or "").startswith(STREAMING_MEDIA_PREFIXES) or size > settings.range_threshold_bytes


def etag_for(record: FileMeta) -> str:
    return quote_etag(record.file_hash or str(record.id))


def prepare_delivery(
    record: FileMeta,
    storage: StorageAdapter,
    settings: Settings,
    range_header: Optional[str] = None,
    if_none_match: Optional[str] = None,
    preview: bool = False,
    is_disconnected: Optional[DisconnectProbe] = None,
) -> Response:
    path = storage.readable_path(record.path)
    size = path.stat().st_size
    media_type = record.mimetype or "application/octet-stream"
    etag = etag_for(record)

    cache_headers = {
        "ETag": etag,
        "Cache-Control": f"public, max-age={settings.cache_max_age}",
    }
    if if_none_match and parse_etags(if_none_match).contains_weak(record.file_hash or str(record.id)):
        return Response(status_code=304, headers=cache_headers)

    headers = {
        **cache_headers,
        "Accept-Ranges": "bytes",
        "Content-Disposition": content_disposition(record.original_filename, inline=preview),
    }
    if preview:
        headers["X-Content-Type-Options"] = "nosniff"

    start, length, status_code = 0, size, 200
    if range_header and supports_range(media_type, size, settings):
        requested = parse_range_header(range_header)
        # malformed, non-byte or multi-range requests get the whole object
        if requested is not None and requested.units == "bytes" and len(requested.ranges) == 1:
            bounds = requested.range_for_length(size)
            if bounds is None:
                return Response(status_code=416, headers={"Content-Range": f"bytes */{size}"})
            start, stop = bounds
            length = stop - start
            status_code = 206
            headers["Content-Range"] = f"bytes {start}-{stop - 1}/{size}"
            logger.debug(f"Serving bytes {start}-{stop - 1}/{size} of file {record.id}")

    headers["Content-Length"] = str(length)
    transfer = FileTransfer(
        path,
        start=start,
        length=length,
        chunk_size=settings.chunk_size,
        timeout=settings.preview_timeout_seconds if preview else None,
        is_disconnected=is_disconnected,
        label=f"file {record.id}",
    )
    return FileStreamResponse(transfer, status_code=status_code, media_type=media_type, headers=headers)
