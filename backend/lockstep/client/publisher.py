"""Host side of playback sync: turn local transport activity into room writes.

Every write stamps ``clientTimestamp`` when the write is issued, not when the
event fired, because viewers use it to estimate how stale a snapshot is. While
playing, a heartbeat republishes the position every second so that estimate
never has to cover more than about one second.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Set

from lockstep.client.transport import EventKind, MediaTransport, Origin, TransportEvent
from lockstep.errors import LockstepError, TransportError, ValidationError
from lockstep.models.room import RoomPatch, RoomState

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 1.0


def epoch_ms() -> int:
    return int(time.time() * 1000)


class StateWriter(Protocol):
    async def write(self, room_id: str, patch: RoomPatch) -> RoomState: ...


@dataclass(frozen=True)
class PublishResult:
    patch: RoomPatch
    state: Optional[RoomState] = None
    error: Optional[LockstepError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class HostPublisher:
    def __init__(
        self,
        store: StateWriter,
        room_id: str,
        transport: MediaTransport,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        now_ms: Callable[[], int] = epoch_ms,
        on_result: Optional[Callable[[PublishResult], None]] = None,
    ):
        self.store = store
        self.room_id = room_id
        self.transport = transport
        self.heartbeat_interval = heartbeat_interval
        self.now_ms = now_ms
        self.on_result = on_result
        self._pending: Set[asyncio.Task] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._remove_listener: Optional[Callable[[], None]] = None

    def start(self):
        if self._heartbeat_task is not None:
            return
        self._remove_listener = self.transport.add_listener(self._on_event)
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info(f"Publishing room {self.room_id}")

    async def stop(self):
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def publish(self, **fields) -> PublishResult:
        try:
            patch = RoomPatch(client_timestamp=self.now_ms(), **fields)
        except ValueError as e:
            return PublishResult(RoomPatch(), error=ValidationError(f"Invalid room update: {e}"))
        try:
            state = await self.store.write(self.room_id, patch)
        except LockstepError as e:
            logger.warning(f"Publish to room {self.room_id} failed: {e.message}")
            return PublishResult(patch, error=e)
        except Exception as e:
            logger.error(f"Publish to room {self.room_id} failed: {e}", exc_info=True)
            return PublishResult(patch, error=TransportError(f"State write failed: {e}"))
        return PublishResult(patch, state=state)

    async def publish_play(self) -> PublishResult:
        logger.debug(f"Host playing at {self.transport.current_time:.3f}")
        return await self.publish(is_playing=True, current_time=self.transport.current_time)

    async def publish_pause(self) -> PublishResult:
        # The pause event can fire before the position settles; sample a tick later
        await asyncio.sleep(0)
        logger.debug(f"Host paused at {self.transport.current_time:.3f}")
        return await self.publish(is_playing=False, current_time=self.transport.current_time)

    async def publish_seek(self) -> PublishResult:
        return await self.publish(current_time=self.transport.current_time)

    async def publish_rate(self) -> PublishResult:
        return await self.publish(playback_rate=self.transport.playback_rate)

    async def heartbeat_once(self) -> Optional[PublishResult]:
        if self.transport.paused:
            return None
        # isPlaying is repeated so viewers keep compensating for latency
        return await self.publish(current_time=self.transport.current_time, is_playing=True)

    async def set_video(self, url: str, subtitles_url: Optional[str] = None) -> PublishResult:
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            return PublishResult(RoomPatch(), error=ValidationError("URL must start with http:// or https://"))
        # A missing subtitles url clears the previous video's track
        result = await self.publish(
            video_url=url,
            subtitles_url=subtitles_url or None,
            is_playing=False,
            current_time=0.0,
            playback_rate=1.0,
        )
        if result.ok:
            self.transport.load(url, subtitles_url, origin=Origin.SYNC)
        return result

    def _on_event(self, event: TransportEvent):
        if event.origin is Origin.SYNC:
            logger.debug(f"Ignoring {event.kind.value} applied by sync")
            return
        handlers = {
            EventKind.PLAY: self.publish_play,
            EventKind.PAUSE: self.publish_pause,
            EventKind.SEEKED: self.publish_seek,
            EventKind.RATE: self.publish_rate,
        }
        handler = handlers.get(event.kind)
        if handler is not None:
            self._spawn(handler())

    def _spawn(self, coro: Awaitable[PublishResult]):
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        self._deliver(task.result())

    def _deliver(self, result: Optional[PublishResult]):
        if result is not None and self.on_result is not None:
            self.on_result(result)

    async def _heartbeat(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self._deliver(await self.heartbeat_once())
