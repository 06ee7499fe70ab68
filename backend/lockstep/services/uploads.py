"""Ledger for in-flight multipart uploads.

A session is our own record layered over the blob store's native multipart
upload. Metadata lives in ``upload:{id}`` and the accepted parts in the hash
``upload:{id}:parts`` (part number -> ETag), so a retried part overwrites its
entry instead of duplicating it. Completed and aborted sessions are deleted;
abandoned ones simply expire.

    Created -> PartsAccumulating -> Completed
                                 -> Aborted
"""

import logging
import time
import uuid
from typing import Callable, Dict, Optional

from lockstep.config import settings
from lockstep.errors import (
    IncompleteUploadError,
    PayloadTooLarge,
    UnsupportedMediaType,
    UploadSessionNotFound,
    ValidationError,
)
from lockstep.models.upload import (
    ChunkResponse,
    CompleteUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    UploadKind,
    UploadSession,
)
from lockstep.services.blob import BlobStore, generate_key, public_url

logger = logging.getLogger(__name__)

SESSION_TTL = settings.upload_session_ttl_seconds
MAX_PARTS = 10000  # S3 multipart ceiling
DEFAULT_VIDEO_TYPE = "video/mp4"
ALLOWED_VIDEO_TYPES = [
    "video/mp4",
    "video/webm",
    "video/ogg",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
]


def video_content_type(content_type: Optional[str]) -> str:
    """Content type to store a video under; unknown types fall back to mp4."""
    if not content_type or content_type == "application/octet-stream":
        return DEFAULT_VIDEO_TYPE
    if content_type not in ALLOWED_VIDEO_TYPES:
        raise UnsupportedMediaType("Invalid file type", allowedTypes=ALLOWED_VIDEO_TYPES, receivedType=content_type)
    return content_type


def session_key(session_id: str) -> str:
    return f"upload:{session_id}"


def parts_key(session_id: str) -> str:
    return f"upload:{session_id}:parts"


class UploadSessionManager:
    def __init__(
        self,
        redis,
        blob_store: BlobStore,
        public_base: str = settings.public_url,
        ttl: int = SESSION_TTL,
        max_file_size: int = settings.max_video_size,
        time_fn: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.blob_store = blob_store
        self.public_base = public_base
        self.ttl = ttl
        self.max_file_size = max_file_size
        self.time_fn = time_fn

    async def init(self, request: InitUploadRequest) -> InitUploadResponse:
        if request.file_size > self.max_file_size:
            raise PayloadTooLarge("File too large", maxSize=self.max_file_size, actualSize=request.file_size)
        if request.file_size <= 0:
            raise ValidationError("File is empty")
        if not 1 <= request.total_chunks <= MAX_PARTS:
            raise ValidationError("Invalid chunk count", totalChunks=request.total_chunks, maxChunks=MAX_PARTS)
        if request.total_chunks > request.file_size:
            raise ValidationError("More chunks than bytes", totalChunks=request.total_chunks)

        content_type = video_content_type(request.content_type)
        key = generate_key(UploadKind.VIDEO, request.filename, now_ms=int(self.time_fn() * 1000))
        store_upload_id = await self.blob_store.create_multipart(
            key,
            content_type,
            {"originalName": request.filename, "fileSize": str(request.file_size)},
        )
        session = UploadSession(
            session_id=uuid.uuid4().hex,
            blob_key=key,
            filename=request.filename,
            content_type=content_type,
            total_bytes=request.file_size,
            total_chunks=request.total_chunks,
            store_upload_id=store_upload_id,
            created_at=self.time_fn(),
        )
        await self.redis.set(session_key(session.session_id), self._dump(session), ex=self.ttl)
        logger.info(
            f"Upload {session.session_id} opened for {key}: {request.file_size} bytes in {request.total_chunks} parts"
        )
        return InitUploadResponse(upload_id=session.session_id, key=key)

    async def get(self, session_id: str) -> UploadSession:
        data = await self.redis.get(session_key(session_id))
        if not data:
            raise UploadSessionNotFound("Upload not found", uploadId=session_id)
        session = UploadSession.model_validate_json(data)
        raw_parts: Dict[str, str] = await self.redis.hgetall(parts_key(session_id))
        session.parts = {int(number): etag for number, etag in raw_parts.items()}
        return session

    async def accept_part(self, session_id: str, part_number: Optional[int], data: bytes) -> ChunkResponse:
        session = await self.get(session_id)
        if part_number is None or not 1 <= part_number <= session.total_chunks:
            raise ValidationError("Invalid part number", partNumber=part_number, totalChunks=session.total_chunks)
        if not data:
            raise ValidationError("Empty chunk", partNumber=part_number)

        etag = await self.blob_store.upload_part(session.blob_key, session.store_upload_id, part_number, data)

        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(parts_key(session_id), str(part_number), etag)
        pipe.expire(parts_key(session_id), self.ttl)
        pipe.expire(session_key(session_id), self.ttl)
        pipe.hlen(parts_key(session_id))
        results = await pipe.execute()
        uploaded = results[-1]
        logger.info(f"Upload {session_id}: part {part_number}/{session.total_chunks} stored ({len(data)} bytes)")
        return ChunkResponse(
            part_number=part_number,
            etag=etag,
            uploaded_chunks=uploaded,
            total_chunks=session.total_chunks,
        )

    async def complete(self, session_id: str) -> CompleteUploadResponse:
        session = await self.get(session_id)
        if not session.is_complete():
            logger.warning(f"Upload {session_id} completed early, missing parts {session.missing_parts()}")
            raise IncompleteUploadError(
                "Incomplete upload",
                uploadedChunks=len(session.parts),
                totalChunks=session.total_chunks,
                missingParts=session.missing_parts(),
            )

        blob = await self.blob_store.complete_multipart(
            session.blob_key, session.store_upload_id, session.receipts()
        )
        await self.redis.delete(session_key(session_id), parts_key(session_id))
        logger.info(f"Upload {session_id} completed as {session.blob_key}")
        return CompleteUploadResponse(
            url=public_url(self.public_base, session.blob_key),
            key=session.blob_key,
            size=blob.size,
            etag=blob.etag,
        )

    async def abort(self, session_id: str) -> None:
        session = await self.get(session_id)
        await self.blob_store.abort_multipart(session.blob_key, session.store_upload_id)
        await self.redis.delete(session_key(session_id), parts_key(session_id))
        logger.info(f"Upload {session_id} aborted")

    @staticmethod
    def _dump(session: UploadSession) -> str:
        return session.model_dump_json(exclude={"parts"})
