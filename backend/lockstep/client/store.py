import logging
from typing import Dict, List, Optional, Tuple

import socketio
from socketio import exceptions as sio_exceptions

from lockstep.errors import LockstepError, TransportError, error_for_response
from lockstep.models.room import RoomPatch, RoomState
from lockstep.services.room import DeletedHandler, SnapshotHandler, Unsubscribe

logger = logging.getLogger(__name__)


class SocketRoomStore:
    """Shared state store client over the server's socket.io events.

    Same contract as ``lockstep.services.room.RoomStore``: ``create``,
    ``write``, ``read_once``, ``subscribe`` and ``delete_room``.
    """

    def __init__(self, url: str, client: Optional[socketio.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self.sio = client or socketio.AsyncClient(reconnection=True)
        self._handlers: Dict[str, List[Tuple[SnapshotHandler, Optional[DeletedHandler]]]] = {}
        self.sio.on("connect", self._on_connect)
        self.sio.on("room_state", self._on_room_state)
        self.sio.on("room_deleted", self._on_room_deleted)

    async def connect(self):
        if not self.sio.connected:
            await self.sio.connect(self.url)

    async def close(self):
        self._handlers.clear()
        await self.sio.disconnect()

    async def _call(self, event: str, data: dict) -> dict:
        try:
            reply = await self.sio.call(event, data, timeout=self.timeout)
        except sio_exceptions.TimeoutError as e:
            raise TransportError(f"{event} timed out") from e
        except sio_exceptions.SocketIOError as e:
            raise TransportError(f"{event} failed: {e}") from e
        if isinstance(reply, dict) and "error" in reply:
            payload = dict(reply)
            raise error_for_response(payload.pop("status", 500), payload)
        return reply

    async def create(self, room_id: Optional[str] = None) -> Tuple[str, RoomState]:
        reply = await self._call("create_room", {"room_id": room_id} if room_id else {})
        return reply["roomId"], RoomState.model_validate(reply["state"])

    async def read_once(self, room_id: str) -> RoomState:
        reply = await self._call("get_room", {"room_id": room_id})
        return RoomState.model_validate(reply["state"])

    async def write(self, room_id: str, patch: RoomPatch) -> RoomState:
        reply = await self._call("update_room", {"room_id": room_id, "patch": patch.wire()})
        return RoomState.model_validate(reply["state"])

    async def delete_room(self, room_id: str) -> None:
        await self._call("delete_room", {"room_id": room_id})

    async def subscribe(
        self,
        room_id: str,
        on_snapshot: SnapshotHandler,
        on_deleted: Optional[DeletedHandler] = None,
    ) -> Unsubscribe:
        entry = (on_snapshot, on_deleted)
        await self._call("subscribe", {"room_id": room_id})
        self._handlers.setdefault(room_id, []).append(entry)

        async def unsubscribe():
            handlers = self._handlers.get(room_id, [])
            if entry in handlers:
                handlers.remove(entry)
            if not handlers:
                self._handlers.pop(room_id, None)
                if self.sio.connected:
                    try:
                        await self._call("unsubscribe", {"room_id": room_id})
                    except LockstepError as e:
                        logger.warning(f"Unsubscribe from {room_id} failed: {e.message}")

        return unsubscribe

    async def _on_connect(self):
        # Socket.io rooms do not survive a reconnect
        for room_id in list(self._handlers):
            await self.sio.emit("subscribe", {"room_id": room_id})

    async def _on_room_state(self, data):
        room_id = data.get("roomId")
        state = RoomState.model_validate(data["state"])
        for on_snapshot, _ in list(self._handlers.get(room_id, [])):
            try:
                await on_snapshot(state)
            except Exception as e:
                logger.error(f"Snapshot handler for {room_id} failed: {e}", exc_info=True)

    async def _on_room_deleted(self, data):
        room_id = data.get("roomId")
        for _, on_deleted in list(self._handlers.get(room_id, [])):
            if on_deleted is not None:
                await on_deleted()
