from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from lockstep.models.room import WireModel


class UploadKind(str, Enum):
    VIDEO = "video"
    SUBTITLE = "subtitle"

    @property
    def prefix(self) -> str:
        return "videos" if self is UploadKind.VIDEO else "subtitles"


class SessionState(str, Enum):
    CREATED = "created"
    PARTS_ACCUMULATING = "parts_accumulating"


class PartReceipt(BaseModel):
    part_number: int
    etag: str


class UploadSession(BaseModel):
    session_id: str
    blob_key: str
    filename: str
    content_type: str
    total_bytes: int
    total_chunks: int
    store_upload_id: str
    created_at: float
    parts: Dict[int, str] = {}  # part number -> integrity tag

    @property
    def state(self) -> SessionState:
        return SessionState.PARTS_ACCUMULATING if self.parts else SessionState.CREATED

    def missing_parts(self) -> List[int]:
        return [n for n in range(1, self.total_chunks + 1) if n not in self.parts]

    def is_complete(self) -> bool:
        return set(self.parts) == set(range(1, self.total_chunks + 1))

    def receipts(self) -> List[PartReceipt]:
        return [PartReceipt(part_number=n, etag=self.parts[n]) for n in sorted(self.parts)]


# HTTP payloads

class InitUploadRequest(WireModel):
    filename: str = Field(min_length=1)
    file_size: int
    total_chunks: int
    content_type: Optional[str] = None


class InitUploadResponse(WireModel):
    upload_id: str
    key: str


class ChunkResponse(WireModel):
    success: bool = True
    part_number: int
    etag: str
    uploaded_chunks: int
    total_chunks: int


class CompleteUploadRequest(WireModel):
    upload_id: str


class CompleteUploadResponse(WireModel):
    success: bool = True
    url: str
    key: str
    size: int
    etag: str


class DirectUploadResponse(WireModel):
    success: bool = True
    url: str
    key: str
    size: int
    type: str


class DeleteRequest(WireModel):
    key: str = ""


class DeleteResponse(WireModel):
    success: bool = True
    message: str
    key: str
