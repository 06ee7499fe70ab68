"""Client driver for uploads to the worker.

Files up to one chunk go through a single ``POST /upload``. Larger files use
the three-phase protocol: ``/upload/init``, one ``PUT /upload/chunk`` per part
in increasing part order, then ``/upload/complete``.

Cancellation is an ``asyncio.Event``. Every request is raced against it; when
it fires the in-flight request is cancelled, the server-side session is
aborted and ``UploadCancelled`` is raised so callers can tell it apart from a
failure.
"""

import asyncio
import logging
import math
import mimetypes
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

import httpx

from lockstep.config import GIB, MIB, ClientSettings
from lockstep.errors import (
    LockstepError,
    PayloadTooLarge,
    TransportError,
    UnsupportedMediaType,
    UploadCancelled,
    error_for_response,
)
from lockstep.models.upload import UploadKind
from lockstep.services.subtitles import SUBTITLE_EXTENSIONS, is_subtitle_file

logger = logging.getLogger(__name__)

CHUNK_SIZE = 80 * MIB
STREAM_PIECE = 1 * MIB
MAX_VIDEO_SIZE = 4 * GIB
MAX_SUBTITLE_SIZE = 10 * MIB

Progress = Callable[[float], None]
T = TypeVar("T")


@dataclass(frozen=True)
class UploadResult:
    url: str
    key: str
    size: int


def plan_chunks(size: int, chunk_size: int = CHUNK_SIZE) -> List[Tuple[int, int, int]]:
    """``(part_number, start, end)`` for each part, end exclusive, parts from 1."""
    total = math.ceil(size / chunk_size)
    return [(n, (n - 1) * chunk_size, min(n * chunk_size, size)) for n in range(1, total + 1)]


async def until_aborted(awaitable: Awaitable[T], abort: Optional[asyncio.Event]) -> T:
    """Await ``awaitable`` unless ``abort`` fires first, then cancel it."""
    if abort is None:
        return await awaitable
    request = asyncio.ensure_future(awaitable)
    if abort.is_set():
        request.cancel()
        raise UploadCancelled("Upload cancelled")
    waiter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        aborted = not request.done()
        if aborted:
            request.cancel()
            # Whatever the cancelled request raises is moot now
            with suppress(asyncio.CancelledError, Exception):
                await request
    if aborted:
        raise UploadCancelled("Upload cancelled")
    return request.result()


def _read_slice(path: Path, start: int, end: int) -> bytes:
    with open(path, "rb") as fh:
        fh.seek(start)
        return fh.read(end - start)


def _report(progress: Optional[Progress], fraction: float):
    if progress is not None:
        progress(min(max(fraction, 0.0), 1.0))


class Uploader:
    def __init__(
        self,
        worker_url: str,
        secret: str,
        chunk_size: int = CHUNK_SIZE,
        part_retries: int = 3,
        retry_backoff: float = 0.5,
        timeout: float = 300.0,
        max_video_size: int = MAX_VIDEO_SIZE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.chunk_size = chunk_size
        self.part_retries = part_retries
        self.retry_backoff = retry_backoff
        self.max_video_size = max_video_size
        self.headers = {"Authorization": f"Bearer {secret}"}
        self.client = client or httpx.AsyncClient(base_url=worker_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings: ClientSettings, client: Optional[httpx.AsyncClient] = None) -> "Uploader":
        return cls(
            settings.worker_url,
            settings.upload_secret,
            chunk_size=settings.chunk_size,
            part_retries=settings.part_retries,
            retry_backoff=settings.retry_backoff,
            timeout=settings.request_timeout,
            client=client,
        )

    async def aclose(self):
        await self.client.aclose()

    async def upload(
        self,
        path,
        progress: Optional[Progress] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> UploadResult:
        path = Path(path)
        size = path.stat().st_size
        if size > self.max_video_size:
            raise PayloadTooLarge("File too large", maxSize=self.max_video_size, actualSize=size)

        logger.info(f"Uploading {path.name} ({size / MIB:.2f}MB)")
        _report(progress, 0.0)
        if size <= self.chunk_size:
            result = await self._direct_upload(path, UploadKind.VIDEO, abort)
        else:
            result = await self._chunked_upload(path, size, progress, abort)
        _report(progress, 1.0)
        return result

    async def upload_subtitles(
        self,
        path,
        progress: Optional[Progress] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> UploadResult:
        path = Path(path)
        if not is_subtitle_file(path.name):
            raise UnsupportedMediaType("Please upload a .vtt or .srt subtitle file", allowedTypes=list(SUBTITLE_EXTENSIONS))
        size = path.stat().st_size
        if size > MAX_SUBTITLE_SIZE:
            raise PayloadTooLarge("Subtitle file too large", maxSize=MAX_SUBTITLE_SIZE, actualSize=size)
        _report(progress, 0.0)
        result = await self._direct_upload(path, UploadKind.SUBTITLE, abort)
        _report(progress, 1.0)
        return result

    async def delete(self, key: str) -> dict:
        return await self._request("POST", "/delete", json={"key": key})

    async def list_videos(self, limit: int = 100, cursor: Optional[str] = None) -> dict:
        params = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        return await self._request("GET", "/list", params=params)

    async def _request(self, method: str, url: str, abort: Optional[asyncio.Event] = None, headers=None, **kwargs) -> dict:
        try:
            response = await until_aborted(
                self.client.request(method, url, headers={**self.headers, **(headers or {})}, **kwargs),
                abort,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise TransportError(f"Network error on {method} {url}: {e}") from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"error": response.text or response.reason_phrase}
            if not isinstance(payload, dict):
                payload = {"error": str(payload)}
            raise error_for_response(response.status_code, payload)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def _direct_upload(self, path: Path, kind: UploadKind, abort: Optional[asyncio.Event]) -> UploadResult:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, path.read_bytes)
        if kind is UploadKind.VIDEO:
            content_type = mimetypes.guess_type(path.name)[0] or "video/mp4"
        else:
            content_type = "text/plain"
        reply = await self._request(
            "POST",
            "/upload",
            abort,
            files={"file": (path.name, data, content_type)},
            data={"type": kind.value},
        )
        logger.info(f"Uploaded {path.name} as {reply['key']}")
        return UploadResult(url=reply["url"], key=reply["key"], size=reply["size"])

    async def _chunked_upload(
        self, path: Path, size: int, progress: Optional[Progress], abort: Optional[asyncio.Event]
    ) -> UploadResult:
        plan = plan_chunks(size, self.chunk_size)
        total = len(plan)
        logger.info(f"Starting chunked upload of {path.name}: {total} chunks")

        init = await self._request(
            "POST",
            "/upload/init",
            abort,
            json={
                "filename": path.name,
                "fileSize": size,
                "totalChunks": total,
                "contentType": mimetypes.guess_type(path.name)[0] or "video/mp4",
            },
        )
        upload_id = init["uploadId"]
        logger.info(f"Upload initialized: {upload_id}")

        loop = asyncio.get_running_loop()
        try:
            for part_number, start, end in plan:
                data = await until_aborted(loop.run_in_executor(None, _read_slice, path, start, end), abort)

                def on_bytes(sent: int, completed: int = part_number - 1, length: int = end - start):
                    # (completed chunks + current chunk fraction) / total chunks
                    _report(progress, (completed + sent / length) / total)

                await self._put_part(upload_id, part_number, total, data, on_bytes, abort)

            logger.info("All chunks uploaded, completing...")
            reply = await self._request("POST", "/upload/complete", abort, json={"uploadId": upload_id})
        except UploadCancelled:
            await self._abort_session(upload_id)
            raise

        return UploadResult(url=reply["url"], key=reply["key"], size=reply["size"])

    async def _put_part(
        self,
        upload_id: str,
        part_number: int,
        total: int,
        data: bytes,
        on_bytes: Callable[[int], None],
        abort: Optional[asyncio.Event],
    ) -> dict:
        attempt = 0
        while True:
            try:
                return await self._request(
                    "PUT",
                    "/upload/chunk",
                    abort,
                    params={"uploadId": upload_id, "partNumber": part_number},
                    content=self._stream(data, on_bytes),
                    headers={"Content-Length": str(len(data)), "Content-Type": "application/octet-stream"},
                )
            except TransportError as e:
                if attempt >= self.part_retries:
                    raise TransportError(f"Failed to upload chunk {part_number}/{total}: {e.message}") from e
                delay = self.retry_backoff * 2**attempt
                attempt += 1
                logger.warning(f"Chunk {part_number}/{total} failed ({e.message}), retry {attempt} in {delay:.1f}s")
                await until_aborted(asyncio.sleep(delay), abort)

    @staticmethod
    async def _stream(data: bytes, on_bytes: Callable[[int], None]):
        view = memoryview(data)
        sent = 0
        for offset in range(0, len(data), STREAM_PIECE):
            piece = bytes(view[offset : offset + STREAM_PIECE])
            yield piece
            sent += len(piece)
            on_bytes(sent)

    async def _abort_session(self, upload_id: str):
        try:
            await self._request("DELETE", "/upload/abort", params={"uploadId": upload_id})
            logger.info(f"Aborted upload session {upload_id}")
        except LockstepError as e:
            # The session still expires on its own
            logger.warning(f"Could not abort upload session {upload_id}: {e.message}")
