import hashlib
import uuid
from typing import Dict, List, Optional, Sequence

import httpx
import pytest
from fakeredis import FakeServer, aioredis

from lockstep.errors import NotFoundError
from lockstep.models.upload import PartReceipt
from lockstep.services.blob import BlobListing, BlobObject
from lockstep.services.uploads import UploadSessionManager

SECRET = "test-secret"
PUBLIC = "https://media.example.test"
AUTH = {"Authorization": f"Bearer {SECRET}"}


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def advance(self, delta: float) -> None:
        self._now += float(delta)

    def __call__(self) -> float:
        return self._now

    def ms(self) -> int:
        return int(round(self._now * 1000))


class MemoryBlobStore:
    """In-process BlobStore with the S3 multipart semantics the server relies on."""

    def __init__(self):
        self.objects: Dict[str, tuple] = {}
        self.multipart: Dict[str, dict] = {}
        self.calls: List[tuple] = []

    async def put(self, key, data, content_type, metadata):
        self.calls.append(("put", key))
        obj = BlobObject(key=key, size=len(data), content_type=content_type,
                         etag=hashlib.md5(data).hexdigest(), metadata=dict(metadata))
        self.objects[key] = (bytes(data), obj)
        return obj

    async def head(self, key) -> Optional[BlobObject]:
        entry = self.objects.get(key)
        return entry[1] if entry else None

    async def stream(self, key, start, end):
        data = self.objects[key][0][start:end + 1]
        for offset in range(0, len(data), 4):
            yield data[offset:offset + 4]

    async def delete(self, key):
        self.calls.append(("delete", key))
        self.objects.pop(key, None)

    async def list(self, prefix, limit, cursor=None) -> BlobListing:
        keys = sorted(k for k in self.objects if k.startswith(prefix))
        offset = int(cursor or 0)
        page = keys[offset:offset + limit]
        more = offset + limit < len(keys)
        return BlobListing(
            objects=[self.objects[k][1] for k in page],
            truncated=more,
            cursor=str(offset + limit) if more else None,
        )

    async def create_multipart(self, key, content_type, metadata) -> str:
        upload_id = uuid.uuid4().hex
        self.calls.append(("create_multipart", key))
        self.multipart[upload_id] = {"key": key, "content_type": content_type, "parts": {}}
        return upload_id

    async def upload_part(self, key, upload_id, part_number, data) -> str:
        if upload_id not in self.multipart:
            raise NotFoundError("Multipart upload not found", key=key)
        etag = f'"{hashlib.md5(data).hexdigest()}"'
        self.multipart[upload_id]["parts"][part_number] = (etag, bytes(data))
        return etag

    async def complete_multipart(self, key, upload_id, parts: Sequence[PartReceipt]) -> BlobObject:
        upload = self.multipart.pop(upload_id)
        chunks = []
        for receipt in parts:
            etag, data = upload["parts"][receipt.part_number]
            assert etag == receipt.etag
            chunks.append(data)
        self.calls.append(("complete_multipart", key))
        return await self.put(key, b"".join(chunks), upload["content_type"], {})

    async def abort_multipart(self, key, upload_id):
        self.calls.append(("abort_multipart", key))
        self.multipart.pop(upload_id, None)


@pytest.fixture
def clock():
    return FakeClock(start=1_700_000_000.0)


@pytest.fixture
def redis():
    return aioredis.FakeRedis(server=FakeServer(), decode_responses=True)


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def manager(redis, blob_store):
    return UploadSessionManager(redis, blob_store, public_base=PUBLIC, max_file_size=4 * 1024**3)


@pytest.fixture
def app(monkeypatch, manager, blob_store):
    from lockstep import main

    monkeypatch.setattr(main.settings, "upload_secret", SECRET)
    monkeypatch.setattr(main.settings, "public_url", PUBLIC)
    main.app.dependency_overrides[main.get_blob_store] = lambda: blob_store
    main.app.dependency_overrides[main.get_session_manager] = lambda: manager
    yield main.app
    main.app.dependency_overrides.clear()


@pytest.fixture
def http(app):
    """Factory for an httpx client bound to the in-process app; call inside the loop."""

    def make(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=transport or httpx.ASGITransport(app=app), base_url="http://worker.test")

    return make
