"""Room lifecycle for a client: creating, joining and demolishing rooms.

The rooms this client hosts are remembered in a small JSON file.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

from lockstep.client.uploader import Uploader
from lockstep.errors import LockstepError, NotFoundError, ValidationError
from lockstep.models.room import RoomState
from lockstep.services.blob import validate_key

logger = logging.getLogger(__name__)


class HostedRooms:
    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> List[str]:
        try:
            rooms = json.loads(self.path.read_text())
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.error(f"Error loading hosted rooms from {self.path}: {e}")
            return []
        return [r for r in rooms if isinstance(r, str)] if isinstance(rooms, list) else []

    def _save(self, rooms: List[str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(rooms))

    def add(self, room_id: str):
        rooms = self.load()
        if room_id not in rooms:
            rooms.append(room_id)
            self._save(rooms)

    def remove(self, room_id: str) -> List[str]:
        rooms = [r for r in self.load() if r != room_id]
        self._save(rooms)
        return rooms

    def __contains__(self, room_id: str) -> bool:
        return room_id in self.load()


async def create_room(store, hosted: HostedRooms) -> str:
    room_id, _ = await store.create()
    hosted.add(room_id)
    logger.info(f"Hosting new room {room_id}")
    return room_id


async def join_room(store, room_id: str) -> RoomState:
    room_id = room_id.strip()
    if not room_id:
        raise ValidationError("Please enter a room ID first")
    return await store.read_once(room_id)


async def rejoin_room(store, hosted: HostedRooms, room_id: str) -> RoomState:
    """Join a room we host, forgetting it if it no longer exists."""
    try:
        return await store.read_once(room_id)
    except NotFoundError:
        hosted.remove(room_id)
        raise


def blob_key_for(url: Optional[str], public_base: str, prefix: str) -> Optional[str]:
    """Object key behind ``url`` when it is hosted by our worker, else ``None``."""
    base = public_base.rstrip("/") + "/"
    if not url or not url.startswith(base):
        return None
    try:
        return validate_key(url[len(base):], prefixes=(prefix,))
    except ValidationError:
        logger.warning(f"Not deleting {url}: not a valid {prefix} key")
        return None


async def demolish_room(store, uploader: Uploader, hosted: HostedRooms, room_id: str, public_base: str) -> List[str]:
    """Delete the room with its stored video and subtitles; return deleted keys."""
    deleted = []
    try:
        state = await store.read_once(room_id)
    except NotFoundError:
        state = None

    if state is not None:
        for url, prefix in ((state.video_url, "videos/"), (state.subtitles_url, "subtitles/")):
            key = blob_key_for(url, public_base, prefix)
            if key is None:
                continue
            try:
                await uploader.delete(key)
                deleted.append(key)
            except LockstepError as e:
                logger.error(f"Failed to delete {key}: {e.message}")
        try:
            await store.delete_room(room_id)
        except NotFoundError:
            pass

    hosted.remove(room_id)
    logger.info(f"Room {room_id} demolished")
    return deleted
