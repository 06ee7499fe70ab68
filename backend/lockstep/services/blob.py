"""Object storage for uploaded videos and subtitles.

Everything talks to the ``BlobStore`` protocol. ``S3BlobStore`` is the
production backend for any S3-compatible service (R2, MinIO, AWS); boto3 is
blocking, so each call runs in the default executor.
"""

import asyncio
import functools
import logging
import posixpath
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Protocol, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from lockstep.errors import (
    NotFoundError,
    ObjectNotFound,
    RangeNotSatisfiable,
    TransportError,
    ValidationError,
)
from lockstep.models.upload import PartReceipt, UploadKind

logger = logging.getLogger(__name__)

STREAM_CHUNK = 1024 * 1024
KEY_PREFIXES = ("videos/", "subtitles/")
_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class BlobObject:
    key: str
    size: int
    content_type: str = "application/octet-stream"
    etag: str = ""
    uploaded: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class BlobListing:
    objects: List[BlobObject]
    truncated: bool = False
    cursor: Optional[str] = None


class BlobStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str, metadata: Dict[str, str]) -> BlobObject: ...

    async def head(self, key: str) -> Optional[BlobObject]: ...

    def stream(self, key: str, start: int, end: int) -> AsyncIterator[bytes]: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str, limit: int, cursor: Optional[str] = None) -> BlobListing: ...

    async def create_multipart(self, key: str, content_type: str, metadata: Dict[str, str]) -> str: ...

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str: ...

    async def complete_multipart(self, key: str, upload_id: str, parts: Sequence[PartReceipt]) -> BlobObject: ...

    async def abort_multipart(self, key: str, upload_id: str) -> None: ...


# Keys

def sanitize_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", name)


def generate_key(kind: UploadKind, filename: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    token = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(6))
    return f"{kind.prefix}/{now_ms}-{token}-{sanitize_filename(filename)}"


def validate_key(key: Optional[str], prefixes: Sequence[str] = KEY_PREFIXES) -> str:
    """Reject keys that escape their prefix once normalised."""
    if not key or posixpath.normpath(key) != key or not key.startswith(tuple(prefixes)):
        raise ValidationError("Invalid key", received=key)
    return key


def public_url(base: str, key: str) -> str:
    return f"{base.rstrip('/')}/{key}"


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Inclusive byte range for a ``Range`` header, ``None`` to serve everything."""
    if not header:
        return None
    match = re.fullmatch(r"\s*bytes=(\d*)-(\d*)\s*", header)
    if not match or not (match.group(1) or match.group(2)):
        # Malformed ranges are ignored, not rejected
        return None
    first, last = match.groups()
    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable("Range not satisfiable", size=size)
        return max(0, size - suffix), size - 1
    start = int(first)
    end = min(int(last), size - 1) if last else size - 1
    if start >= size or start > end:
        raise RangeNotSatisfiable("Range not satisfiable", size=size)
    return start, end


# S3

def _translate(exc: Exception, key: str) -> Exception:
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 500)
        if code in ("NoSuchKey", "NotFound", "404"):
            return ObjectNotFound("Object not found", key=key)
        if code == "NoSuchUpload":
            return NotFoundError("Multipart upload not found", key=key)
        if status < 500:
            return ValidationError(f"Object store rejected request: {code}", key=key)
    return TransportError(f"Object store unavailable: {exc}", key=key)


class S3BlobStore:
    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings) -> "S3BlobStore":
        client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=settings.s3_region,
        )
        return cls(client, settings.s3_bucket)

    async def _call(self, method: str, key: str, **kwargs):
        loop = asyncio.get_running_loop()
        fn = functools.partial(getattr(self.client, method), Bucket=self.bucket, **kwargs)
        try:
            return await loop.run_in_executor(None, fn)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 {method} failed for {key}: {e}")
            raise _translate(e, key) from e

    async def put(self, key: str, data: bytes, content_type: str, metadata: Dict[str, str]) -> BlobObject:
        result = await self._call(
            "put_object", key, Key=key, Body=data, ContentType=content_type, Metadata=metadata
        )
        return BlobObject(key=key, size=len(data), content_type=content_type, etag=result.get("ETag", ""))

    async def head(self, key: str) -> Optional[BlobObject]:
        try:
            result = await self._call("head_object", key, Key=key)
        except ObjectNotFound:
            return None
        return BlobObject(
            key=key,
            size=result["ContentLength"],
            content_type=result.get("ContentType") or "application/octet-stream",
            etag=result.get("ETag", ""),
            metadata=result.get("Metadata", {}),
        )

    async def stream(self, key: str, start: int, end: int) -> AsyncIterator[bytes]:
        result = await self._call("get_object", key, Key=key, Range=f"bytes={start}-{end}")
        body = result["Body"]
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await loop.run_in_executor(None, body.read, STREAM_CHUNK)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def delete(self, key: str) -> None:
        await self._call("delete_object", key, Key=key)

    async def list(self, prefix: str, limit: int, cursor: Optional[str] = None) -> BlobListing:
        kwargs = {"Prefix": prefix, "MaxKeys": limit}
        if cursor:
            kwargs["ContinuationToken"] = cursor
        result = await self._call("list_objects_v2", prefix, **kwargs)
        objects = [
            BlobObject(
                key=obj["Key"],
                size=obj["Size"],
                etag=obj.get("ETag", ""),
                uploaded=obj["LastModified"].isoformat() if obj.get("LastModified") else None,
            )
            for obj in result.get("Contents", [])
        ]
        return BlobListing(
            objects=objects,
            truncated=result.get("IsTruncated", False),
            cursor=result.get("NextContinuationToken"),
        )

    async def create_multipart(self, key: str, content_type: str, metadata: Dict[str, str]) -> str:
        result = await self._call(
            "create_multipart_upload", key, Key=key, ContentType=content_type, Metadata=metadata
        )
        return result["UploadId"]

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        result = await self._call(
            "upload_part", key, Key=key, UploadId=upload_id, PartNumber=part_number, Body=data
        )
        return result["ETag"]

    async def complete_multipart(self, key: str, upload_id: str, parts: Sequence[PartReceipt]) -> BlobObject:
        result = await self._call(
            "complete_multipart_upload",
            key,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in parts]},
        )
        head = await self.head(key)
        if head is None:
            raise ObjectNotFound("Completed object not found", key=key)
        head.etag = result.get("ETag", head.etag)
        return head

    async def abort_multipart(self, key: str, upload_id: str) -> None:
        await self._call("abort_multipart_upload", key, Key=key, UploadId=upload_id)
