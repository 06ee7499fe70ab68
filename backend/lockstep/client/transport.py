"""Local media transport: what the publisher observes and the reconciler drives.

Every mutation carries an ``Origin``. Events raised by a mutation repeat that
origin, so a listener can tell a user's click from a correction applied by
the reconciler without any shared flag.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class Origin(str, Enum):
    USER = "user"
    SYNC = "sync"


class EventKind(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    SEEKED = "seeked"
    RATE = "ratechange"
    SOURCE = "loadstart"


@dataclass(frozen=True)
class TransportEvent:
    kind: EventKind
    position: float
    origin: Origin


Listener = Callable[[TransportEvent], None]


class PlaybackBlocked(Exception):
    """Playback was refused, e.g. by an autoplay policy before any user gesture."""


class MediaTransport(Protocol):
    @property
    def current_time(self) -> float: ...

    @property
    def paused(self) -> bool: ...

    @property
    def playback_rate(self) -> float: ...

    @property
    def source(self) -> str: ...

    @property
    def subtitles(self) -> Optional[str]: ...

    async def play(self, origin: Origin = Origin.USER) -> None: ...

    def pause(self, origin: Origin = Origin.USER) -> None: ...

    def seek(self, position: float, origin: Origin = Origin.USER) -> None: ...

    def set_rate(self, rate: float, origin: Origin = Origin.USER) -> None: ...

    def load(self, url: str, subtitles: Optional[str] = None, origin: Origin = Origin.USER) -> None: ...

    def set_subtitles(self, url: Optional[str], origin: Origin = Origin.USER) -> None: ...

    def add_listener(self, listener: Listener) -> Callable[[], None]: ...


class SimulatedTransport:
    """Clock-driven player for headless clients.

    Position advances with ``time_fn`` at ``playback_rate`` while playing.
    Until a user-originated play, ``play`` from the reconciler raises
    ``PlaybackBlocked`` when ``autoplay_allowed`` is false.
    """

    def __init__(
        self,
        source: str = "",
        duration: Optional[float] = None,
        time_fn: Callable[[], float] = time.monotonic,
        autoplay_allowed: bool = True,
    ):
        self._source = source
        self._subtitles: Optional[str] = None
        self.duration = duration
        self.time_fn = time_fn
        self.autoplay_allowed = autoplay_allowed
        self._position = 0.0
        self._anchor: Optional[float] = None  # clock reading when playback last (re)started
        self._rate = 1.0
        self._listeners: List[Listener] = []

    @property
    def current_time(self) -> float:
        position = self._position
        if self._anchor is not None:
            position += (self.time_fn() - self._anchor) * self._rate
        if self.duration is not None:
            position = min(position, self.duration)
        return position

    @property
    def paused(self) -> bool:
        return self._anchor is None

    @property
    def playback_rate(self) -> float:
        return self._rate

    @property
    def source(self) -> str:
        return self._source

    @property
    def subtitles(self) -> Optional[str]:
        return self._subtitles

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, kind: EventKind, origin: Origin):
        event = TransportEvent(kind, self.current_time, origin)
        for listener in list(self._listeners):
            listener(event)

    def _freeze(self):
        self._position = self.current_time
        if self._anchor is not None:
            self._anchor = self.time_fn()

    async def play(self, origin: Origin = Origin.USER) -> None:
        if origin is Origin.USER:
            self.autoplay_allowed = True
        elif not self.autoplay_allowed:
            raise PlaybackBlocked("play() requires a user gesture first")
        if not self.paused:
            return
        self._anchor = self.time_fn()
        self._emit(EventKind.PLAY, origin)

    def pause(self, origin: Origin = Origin.USER) -> None:
        if self.paused:
            return
        self._position = self.current_time
        self._anchor = None
        self._emit(EventKind.PAUSE, origin)

    def seek(self, position: float, origin: Origin = Origin.USER) -> None:
        position = max(0.0, position)
        if self.duration is not None:
            position = min(position, self.duration)
        self._position = position
        if self._anchor is not None:
            self._anchor = self.time_fn()
        self._emit(EventKind.SEEKED, origin)

    def set_rate(self, rate: float, origin: Origin = Origin.USER) -> None:
        if rate <= 0:
            raise ValueError("playback rate must be positive")
        if rate == self._rate:
            return
        self._freeze()
        self._rate = rate
        self._emit(EventKind.RATE, origin)

    def load(self, url: str, subtitles: Optional[str] = None, origin: Origin = Origin.USER) -> None:
        self._source = url
        self._subtitles = subtitles
        self._position = 0.0
        self._anchor = None
        self._rate = 1.0
        logger.info(f"Loaded source {url or '<none>'}")
        self._emit(EventKind.SOURCE, origin)

    def set_subtitles(self, url: Optional[str], origin: Origin = Origin.USER) -> None:
        self._subtitles = url
