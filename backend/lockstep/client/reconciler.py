"""Viewer side of playback sync.

Each snapshot is absolute (position plus the host's wall clock when it was
taken), so applying only the newest of several skipped snapshots is as good
as applying all of them. Per snapshot:

1. a new video url swaps the source and ends the cycle;
2. a playing snapshot is aged by ``now - clientTimestamp``, capped at 1.5s;
3. the position is corrected when drift exceeds 0.3s or no correction
   happened for 2s;
4. play/pause is applied after the position, then the playback rate.

All mutations are tagged ``Origin.SYNC`` so a publisher on the same
transport never echoes them back into the room.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol

from lockstep.client.publisher import epoch_ms
from lockstep.client.transport import MediaTransport, Origin
from lockstep.models.room import RoomState
from lockstep.services.room import DeletedHandler, SnapshotHandler, Unsubscribe

logger = logging.getLogger(__name__)

COMPENSATION_CAP = 1.5  # seconds; heartbeat period plus store propagation
DRIFT_THRESHOLD = 0.3  # seconds
FORCED_CORRECTION_MS = 2000


class StateSource(Protocol):
    async def read_once(self, room_id: str) -> RoomState: ...

    async def subscribe(
        self, room_id: str, on_snapshot: SnapshotHandler, on_deleted: Optional[DeletedHandler] = None
    ) -> Unsubscribe: ...


def latency_compensation(snapshot: RoomState, now_ms: int) -> float:
    """Seconds the host has played since the snapshot was taken."""
    if not snapshot.is_playing or snapshot.client_timestamp is None:
        return 0.0
    elapsed = (now_ms - snapshot.client_timestamp) / 1000
    # Viewer clock behind the host's can make elapsed negative
    return min(max(elapsed, 0.0), COMPENSATION_CAP)


@dataclass(frozen=True)
class CorrectionPlan:
    compensation: float
    target_time: float
    drift: float
    correct: bool


def plan_correction(local_time: float, snapshot: RoomState, now_ms: int, last_correction_ms: int) -> CorrectionPlan:
    compensation = latency_compensation(snapshot, now_ms)
    target_time = snapshot.current_time + compensation
    drift = abs(local_time - target_time)
    correct = drift > DRIFT_THRESHOLD or now_ms - last_correction_ms > FORCED_CORRECTION_MS
    return CorrectionPlan(compensation, target_time, drift, correct)


@dataclass(frozen=True)
class ReconcileOutcome:
    source_changed: bool = False
    compensation: float = 0.0
    target_time: Optional[float] = None
    drift: Optional[float] = None
    corrected: bool = False
    state_change: Optional[str] = None
    rate_changed: bool = False


class Reconciler:
    def __init__(
        self,
        store: StateSource,
        room_id: str,
        transport: MediaTransport,
        now_ms: Callable[[], int] = epoch_ms,
        on_room_deleted: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.store = store
        self.room_id = room_id
        self.transport = transport
        self.now_ms = now_ms
        self.on_room_deleted = on_room_deleted
        self.last_applied_client_timestamp: Optional[int] = None
        self.last_applied_update: Optional[int] = None
        self.last_correction_ms = 0
        self.enabled = False
        self._unsubscribe: Optional[Unsubscribe] = None
        self._bootstrap_buffer: Optional[List[RoomState]] = None

    async def enable_sync(self) -> Optional[ReconcileOutcome]:
        """Unlock the transport, apply one fresh snapshot, then follow the room.

        Must be triggered by a user action: the play/pause pair below is what
        satisfies autoplay policies, so it is tagged as user-originated.
        """
        if self.enabled or self._bootstrap_buffer is not None:
            return None
        await self.transport.play(origin=Origin.USER)
        self.transport.pause(origin=Origin.USER)

        # Subscribe before reading; snapshots arriving meanwhile wait in the buffer
        self._bootstrap_buffer = []
        try:
            self._unsubscribe = await self.store.subscribe(self.room_id, self._on_snapshot, self._on_deleted)
            snapshot = await self.store.read_once(self.room_id)
        except Exception:
            self._bootstrap_buffer = None
            await self.disable_sync()
            raise

        outcome = await self.apply(snapshot)
        if outcome is not None and outcome.source_changed:
            # Without this the viewer would sit at 0 until the next heartbeat
            outcome = await self.apply(snapshot)

        buffered, self._bootstrap_buffer = self._bootstrap_buffer, None
        if self._unsubscribe is None:
            # Room deleted while bootstrapping
            return outcome
        self.enabled = True
        logger.info(f"Sync enabled for room {self.room_id}")
        if buffered and self._is_newer(buffered[-1]):
            await self.apply(buffered[-1])
        return outcome

    async def disable_sync(self):
        self.enabled = False
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            await unsubscribe()
            logger.info(f"Sync disabled for room {self.room_id}")

    async def apply(self, snapshot: RoomState) -> Optional[ReconcileOutcome]:
        try:
            return await self._apply(snapshot)
        except Exception as e:
            logger.warning(f"Skipping snapshot for room {self.room_id}: {e}")
            return None

    async def _apply(self, snapshot: RoomState) -> ReconcileOutcome:
        transport = self.transport
        now = self.now_ms()

        if snapshot.video_url and snapshot.video_url != transport.source:
            transport.load(snapshot.video_url, snapshot.subtitles_url, origin=Origin.SYNC)
            self.last_correction_ms = 0
            self.last_applied_client_timestamp = snapshot.client_timestamp
            self.last_applied_update = snapshot.last_update
            return ReconcileOutcome(source_changed=True)
        if snapshot.subtitles_url != transport.subtitles:
            transport.set_subtitles(snapshot.subtitles_url, origin=Origin.SYNC)
        if not transport.source:
            return ReconcileOutcome()

        plan = plan_correction(transport.current_time, snapshot, now, self.last_correction_ms)
        logger.debug(
            f"Viewer at {transport.current_time:.3f}s, target {plan.target_time:.3f}s, "
            f"drift {plan.drift:.3f}s, compensation {plan.compensation:.3f}s"
        )
        if plan.correct:
            transport.seek(plan.target_time, origin=Origin.SYNC)
            self.last_correction_ms = now

        state_change = None
        if snapshot.is_playing and transport.paused:
            try:
                await transport.play(origin=Origin.SYNC)
                state_change = "play"
            except Exception as e:
                logger.warning(f"Play failed: {e}")
        elif not snapshot.is_playing and not transport.paused:
            transport.pause(origin=Origin.SYNC)
            state_change = "pause"

        rate_changed = snapshot.playback_rate != transport.playback_rate
        if rate_changed:
            transport.set_rate(snapshot.playback_rate, origin=Origin.SYNC)

        self.last_applied_client_timestamp = snapshot.client_timestamp
        self.last_applied_update = snapshot.last_update
        return ReconcileOutcome(
            compensation=plan.compensation,
            target_time=plan.target_time,
            drift=plan.drift,
            corrected=plan.correct,
            state_change=state_change,
            rate_changed=rate_changed,
        )

    def _is_newer(self, snapshot: RoomState) -> bool:
        if snapshot.last_update is None or self.last_applied_update is None:
            return True
        return snapshot.last_update > self.last_applied_update

    async def _on_snapshot(self, snapshot: RoomState):
        if self._bootstrap_buffer is not None:
            self._bootstrap_buffer.append(snapshot)
            return
        if not self.enabled or not self._is_newer(snapshot):
            return
        await self.apply(snapshot)

    async def _on_deleted(self):
        logger.info(f"Room {self.room_id} was deleted")
        await self.disable_sync()
        if self.on_room_deleted is not None:
            await self.on_room_deleted()
