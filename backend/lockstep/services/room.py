import asyncio
import json
import logging
import time
import uuid
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from redis.exceptions import WatchError

from lockstep.config import settings
from lockstep.errors import RoomNotFound, ValidationError
from lockstep.models.room import RoomPatch, RoomState

logger = logging.getLogger(__name__)

ROOM_TTL = settings.room_ttl_seconds
EVENTS_PREFIX = "room-events:"

SnapshotHandler = Callable[[RoomState], Awaitable[None]]
DeletedHandler = Callable[[], Awaitable[None]]
EventHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]


def new_room_id() -> str:
    return str(uuid.uuid4())[:8]


def room_key(room_id: str) -> str:
    return f"room:{room_id}"


def events_channel(room_id: str) -> str:
    return f"{EVENTS_PREFIX}{room_id}"


def _encode(fields: Dict[str, Any]) -> Dict[str, str]:
    return {name: json.dumps(value) for name, value in fields.items()}


def _decode(raw: Dict[str, str]) -> RoomState:
    return RoomState.model_validate({name: json.loads(value) for name, value in raw.items()})


def _is_stale(patch: RoomPatch, current: RoomState) -> bool:
    if patch.client_timestamp is None or current.client_timestamp is None:
        return False
    return patch.client_timestamp < current.client_timestamp


class RoomStore:
    """Room state in a Redis hash, one JSON value per field.

    A merge patch is a single HSET. Every write publishes the merged snapshot
    on ``room-events:{id}`` in the order writes were applied. A patch whose
    ``clientTimestamp`` is older than the stored one is dropped, so host writes
    that race each other cannot roll the room back.
    """

    def __init__(self, redis, ttl: int = ROOM_TTL, time_fn: Callable[[], float] = time.time):
        self.redis = redis
        self.ttl = ttl
        self.time_fn = time_fn

    def _stamp(self, previous: Optional[int]) -> int:
        # Server-assigned and strictly increasing per room
        now = int(self.time_fn() * 1000)
        return max(now, (previous or 0) + 1)

    async def create(self, room_id: Optional[str] = None) -> Tuple[str, RoomState]:
        room_id = room_id or new_room_id()
        state = RoomState(last_update=self._stamp(None))
        created = await self.redis.hsetnx(room_key(room_id), "lastUpdate", json.dumps(state.last_update))
        if not created:
            raise ValidationError("Room already exists", roomId=room_id)
        await self.redis.hset(room_key(room_id), mapping=_encode(state.wire()))
        await self.redis.expire(room_key(room_id), self.ttl)
        logger.info(f"Created room {room_id}")
        return room_id, state

    async def read_once(self, room_id: str) -> RoomState:
        raw = await self.redis.hgetall(room_key(room_id))
        if not raw:
            raise RoomNotFound("Room not found", roomId=room_id)
        return _decode(raw)

    async def write(self, room_id: str, patch: RoomPatch) -> RoomState:
        key = room_key(room_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.hgetall(key)
                    if not raw:
                        raise RoomNotFound("Room not found", roomId=room_id)
                    current = _decode(raw)
                    if _is_stale(patch, current):
                        # An older host write arriving late
                        await pipe.reset()
                        logger.info(
                            f"Dropped stale write to room {room_id}: clientTimestamp "
                            f"{patch.client_timestamp} < {current.client_timestamp}"
                        )
                        return current
                    fields = patch.wire()
                    fields["lastUpdate"] = self._stamp(current.last_update)
                    pipe.multi()
                    pipe.hset(key, mapping=_encode(fields))
                    pipe.expire(key, self.ttl)
                    await pipe.execute()
                    break
                except WatchError:
                    # Room changed or vanished between read and write; retry
                    continue

        merged = RoomState.model_validate({**current.wire(), **fields})
        await self.redis.publish(events_channel(room_id), json.dumps({"roomId": room_id, "state": merged.wire()}))
        return merged

    async def delete_room(self, room_id: str) -> None:
        deleted = await self.redis.delete(room_key(room_id))
        if not deleted:
            raise RoomNotFound("Room not found", roomId=room_id)
        await self.redis.publish(events_channel(room_id), json.dumps({"roomId": room_id, "deleted": True}))
        logger.info(f"Deleted room {room_id}")

    async def subscribe(
        self,
        room_id: str,
        on_snapshot: SnapshotHandler,
        on_deleted: Optional[DeletedHandler] = None,
    ) -> Unsubscribe:
        async def dispatch(channel: str, event: Dict[str, Any]):
            if event.get("deleted"):
                if on_deleted is not None:
                    await on_deleted()
                return
            await on_snapshot(RoomState.model_validate(event["state"]))

        pubsub = self.redis.pubsub()
        await pubsub.subscribe(events_channel(room_id))
        return self._start_pump(pubsub, dispatch)

    async def listen_all(self, handler: EventHandler) -> Unsubscribe:
        """Receive ``(room_id, event)`` for every room; used for socket relays."""

        async def dispatch(channel: str, event: Dict[str, Any]):
            await handler(channel[len(EVENTS_PREFIX):], event)

        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(f"{EVENTS_PREFIX}*")
        return self._start_pump(pubsub, dispatch)

    def _start_pump(self, pubsub, dispatch: EventHandler) -> Unsubscribe:
        stopped = asyncio.Event()
        task = asyncio.create_task(self._pump(pubsub, dispatch, stopped))

        async def unsubscribe():
            stopped.set()
            # From inside a handler the pump stops on its own after the dispatch
            if task is not asyncio.current_task():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        return unsubscribe

    async def _pump(self, pubsub, dispatch: EventHandler, stopped: asyncio.Event):
        try:
            async for message in pubsub.listen():
                if message["type"] not in ("message", "pmessage"):
                    continue
                try:
                    await dispatch(message["channel"], json.loads(message["data"]))
                except Exception as e:
                    # A failing subscriber must not stop delivery of later snapshots
                    logger.error(f"Room event handler failed on {message['channel']}: {e}", exc_info=True)
                if stopped.is_set():
                    break
        finally:
            await pubsub.aclose()
