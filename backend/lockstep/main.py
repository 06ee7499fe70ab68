import hmac
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional

import socketio
from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from lockstep.config import settings
from lockstep.database import redis_client
from lockstep.errors import (
    AuthorizationError,
    LockstepError,
    ObjectNotFound,
    PayloadTooLarge,
    UnsupportedMediaType,
    ValidationError,
)
from lockstep.models.room import RoomPatch
from lockstep.models.upload import (
    CompleteUploadRequest,
    DeleteRequest,
    DeleteResponse,
    DirectUploadResponse,
    InitUploadRequest,
    UploadKind,
)
from lockstep.services.blob import (
    BlobStore,
    S3BlobStore,
    generate_key,
    parse_range,
    public_url,
    validate_key,
)
from lockstep.services.room import RoomStore
from lockstep.services.subtitles import is_subtitle_file, prepare_subtitles
from lockstep.services.uploads import UploadSessionManager, video_content_type

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@lru_cache
def get_room_store() -> RoomStore:
    return RoomStore(redis_client)


@lru_cache
def get_blob_store() -> BlobStore:
    return S3BlobStore.from_settings(settings)


def get_session_manager(blob_store: BlobStore = Depends(get_blob_store)) -> UploadSessionManager:
    return UploadSessionManager(redis_client, blob_store)


def require_secret(authorization: Optional[str] = Header(None)):
    expected = f"Bearer {settings.upload_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        logger.warning("Rejected request with missing or wrong bearer secret")
        raise AuthorizationError("Unauthorized")


async def relay_room_event(room_id: str, event: dict):
    if event.get("deleted"):
        await sio.emit("room_deleted", {"roomId": room_id}, room=room_id)
    else:
        await sio.emit("room_state", {"roomId": room_id, "state": event["state"]}, room=room_id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fan store publications out to socket.io rooms
    stop_relay = await get_room_store().listen_all(relay_room_event)
    logger.info("Room event relay started")
    try:
        yield
    finally:
        await stop_relay()
        logger.info("Room event relay stopped")


app = FastAPI(lifespan=lifespan)

# CORS Configuration
origins = settings.origins or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=origins if origins != ["*"] else "*")
socket_app = socketio.ASGIApp(sio, app)


@app.exception_handler(LockstepError)
async def lockstep_error_handler(request: Request, exc: LockstepError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = [f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()]
    return JSONResponse({"error": "Invalid request", "problems": problems}, status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse({"error": "Internal server error", "message": str(exc)}, status_code=500)


# Uploads
@app.post("/upload", dependencies=[Depends(require_secret)])
async def direct_upload(
    file: Optional[UploadFile] = File(None),
    type_: str = Form("video", alias="type"),
    blob_store: BlobStore = Depends(get_blob_store),
):
    if file is None or not file.filename:
        raise ValidationError("No file provided")
    try:
        kind = UploadKind(type_)
    except ValueError:
        raise ValidationError("Invalid upload type", received=type_)

    limit = settings.max_video_size if kind is UploadKind.VIDEO else settings.max_subtitle_size
    # Refuse by declared size before buffering the body
    if file.size is not None and file.size > limit:
        raise PayloadTooLarge("File too large", maxSize=limit, actualSize=file.size)

    data = await file.read()
    size = len(data)
    name = file.filename
    if size > limit:
        raise PayloadTooLarge("File too large", maxSize=limit, actualSize=size)

    if kind is UploadKind.VIDEO:
        content_type = video_content_type(file.content_type)
    else:
        if not is_subtitle_file(name):
            raise UnsupportedMediaType("Invalid subtitle file", allowedTypes=[".vtt", ".srt"], receivedType=name)
        name, data, content_type = prepare_subtitles(name, data)

    key = generate_key(kind, name)
    await blob_store.put(key, data, content_type, {"originalName": file.filename, "fileSize": str(size)})
    logger.info(f"Stored {kind.value} {key} ({size} bytes)")

    return DirectUploadResponse(
        url=public_url(settings.public_url, key),
        key=key,
        size=size,
        type=content_type,
    ).wire()


@app.post("/upload/init", dependencies=[Depends(require_secret)])
async def init_upload(body: InitUploadRequest, manager: UploadSessionManager = Depends(get_session_manager)):
    return (await manager.init(body)).wire()


@app.put("/upload/chunk", dependencies=[Depends(require_secret)])
async def upload_chunk(
    request: Request,
    upload_id: Optional[str] = Query(None, alias="uploadId"),
    part_number: Optional[int] = Query(None, alias="partNumber"),
    manager: UploadSessionManager = Depends(get_session_manager),
):
    if not upload_id:
        raise ValidationError("Missing uploadId")
    data = await request.body()
    return (await manager.accept_part(upload_id, part_number, data)).wire()


@app.post("/upload/complete", dependencies=[Depends(require_secret)])
async def complete_upload(body: CompleteUploadRequest, manager: UploadSessionManager = Depends(get_session_manager)):
    return (await manager.complete(body.upload_id)).wire()


@app.delete("/upload/abort", dependencies=[Depends(require_secret)])
async def abort_upload(
    upload_id: Optional[str] = Query(None, alias="uploadId"),
    manager: UploadSessionManager = Depends(get_session_manager),
):
    if not upload_id:
        raise ValidationError("Missing uploadId")
    await manager.abort(upload_id)
    return Response(status_code=204)


# Streaming
async def stream_object(prefix: str, path: str, range_header: Optional[str], blob_store: BlobStore):
    key = validate_key(f"{prefix}/{path}", prefixes=(f"{prefix}/",))
    obj = await blob_store.head(key)
    if obj is None:
        raise ObjectNotFound("Video not found" if prefix == "videos" else "Subtitles not found", key=key)

    headers = {
        "Cache-Control": "public, max-age=31536000",
        "Accept-Ranges": "bytes",
    }
    byte_range = parse_range(range_header, obj.size)
    if byte_range:
        start, end = byte_range
        headers["Content-Range"] = f"bytes {start}-{end}/{obj.size}"
        headers["Content-Length"] = str(end - start + 1)
        status = 206
    else:
        start, end = 0, obj.size - 1
        headers["Content-Length"] = str(obj.size)
        status = 200

    if obj.size == 0:
        return Response(b"", status_code=200, headers=headers, media_type=obj.content_type)
    return StreamingResponse(
        blob_store.stream(key, start, end), status_code=status, headers=headers, media_type=obj.content_type
    )


@app.get("/videos/{path:path}")
async def stream_video(
    path: str, range_header: Optional[str] = Header(None, alias="Range"), blob_store: BlobStore = Depends(get_blob_store)
):
    return await stream_object("videos", path, range_header, blob_store)


@app.get("/subtitles/{path:path}")
async def stream_subtitles(
    path: str, range_header: Optional[str] = Header(None, alias="Range"), blob_store: BlobStore = Depends(get_blob_store)
):
    return await stream_object("subtitles", path, range_header, blob_store)


@app.get("/list")
async def list_videos(
    limit: int = Query(100, ge=1, le=1000),
    cursor: Optional[str] = None,
    blob_store: BlobStore = Depends(get_blob_store),
):
    listed = await blob_store.list("videos/", limit, cursor)
    return {
        "videos": [
            {
                "key": obj.key,
                "size": obj.size,
                "uploaded": obj.uploaded,
                "url": public_url(settings.public_url, obj.key),
                "etag": obj.etag,
            }
            for obj in listed.objects
        ],
        "truncated": listed.truncated,
        "cursor": listed.cursor,
    }


@app.post("/delete", dependencies=[Depends(require_secret)])
async def delete_object(body: DeleteRequest, blob_store: BlobStore = Depends(get_blob_store)):
    key = validate_key(body.key)
    if await blob_store.head(key) is None:
        logger.warning(f"Delete requested for missing object {key}")
        raise ObjectNotFound("Object not found", success=False, key=key)
    await blob_store.delete(key)
    logger.info(f"Deleted {key}")
    message = "Video deleted" if key.startswith("videos/") else "Subtitles deleted"
    return DeleteResponse(message=message, key=key).wire()


# Socket Events
@sio.event
async def connect(sid, environ):
    logger.info(f"Client {sid} connected")


@sio.event
async def disconnect(sid):
    logger.info(f"Client {sid} disconnected")


def _room_id(data) -> str:
    room_id = (data or {}).get("room_id")
    if not room_id:
        raise ValidationError("Missing room_id")
    return room_id


async def _acked(sid: str, event: str, handler):
    try:
        return await handler()
    except LockstepError as e:
        logger.warning(f"{event} from {sid} rejected: {e.message}")
        return {**e.to_dict(), "status": e.status_code}
    except Exception as e:
        logger.error(f"Error in {event}: {e}", exc_info=True)
        return {"error": "Internal server error", "status": 500}


@sio.event
async def create_room(sid, data=None):
    async def handle():
        room_id, state = await get_room_store().create((data or {}).get("room_id"))
        return {"roomId": room_id, "state": state.wire()}

    return await _acked(sid, "create_room", handle)


@sio.event
async def get_room(sid, data):
    async def handle():
        room_id = _room_id(data)
        state = await get_room_store().read_once(room_id)
        return {"roomId": room_id, "state": state.wire()}

    return await _acked(sid, "get_room", handle)


@sio.event
async def update_room(sid, data):
    async def handle():
        room_id = _room_id(data)
        try:
            patch = RoomPatch.model_validate(data.get("patch") or {})
        except PydanticValidationError as e:
            raise ValidationError("Invalid patch", problems=[err["msg"] for err in e.errors()])
        state = await get_room_store().write(room_id, patch)
        return {"roomId": room_id, "state": state.wire()}

    return await _acked(sid, "update_room", handle)


@sio.event
async def subscribe(sid, data):
    async def handle():
        room_id = _room_id(data)
        state = await get_room_store().read_once(room_id)
        await sio.enter_room(sid, room_id)
        logger.info(f"Client {sid} subscribed to room {room_id}")
        return {"roomId": room_id, "state": state.wire()}

    return await _acked(sid, "subscribe", handle)


@sio.event
async def unsubscribe(sid, data):
    async def handle():
        room_id = _room_id(data)
        await sio.leave_room(sid, room_id)
        return {"roomId": room_id}

    return await _acked(sid, "unsubscribe", handle)


@sio.event
async def delete_room(sid, data):
    async def handle():
        room_id = _room_id(data)
        await get_room_store().delete_room(room_id)
        return {"roomId": room_id, "deleted": True}

    return await _acked(sid, "delete_room", handle)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("lockstep.main:socket_app", host="0.0.0.0", port=settings.port)
