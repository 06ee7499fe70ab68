import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from lockstep.client.publisher import PublishResult
from lockstep.errors import LockstepError, NotFoundError, UploadCancelled

NOTICE_TTL = 5.0  # seconds before a notice dismisses itself


class Variant(str, Enum):
    DEFAULT = "default"
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"
    WARNING = "warning"


@dataclass(frozen=True)
class Style:
    border: str
    text: str
    icon: Optional[str]


VARIANT_STYLES: Dict[Variant, Style] = {
    Variant.DEFAULT: Style("border-base-content", "text-base-content", None),
    Variant.SUCCESS: Style("border-success", "text-success", "check-circle"),
    Variant.ERROR: Style("border-error", "text-error", "x-circle"),
    Variant.INFO: Style("border-info", "text-info", "info-circle"),
    Variant.WARNING: Style("border-warning", "text-warning", "exclamation-triangle"),
}


@dataclass(frozen=True)
class Notice:
    id: str
    message: str
    variant: Variant = Variant.DEFAULT
    created_at: float = 0.0

    @property
    def style(self) -> Style:
        return VARIANT_STYLES[self.variant]


def notice_variant(exc: BaseException) -> Variant:
    if isinstance(exc, UploadCancelled):
        return Variant.INFO
    if isinstance(exc, NotFoundError):
        return Variant.WARNING
    return Variant.ERROR


def notice_message(exc: BaseException) -> str:
    if isinstance(exc, UploadCancelled):
        return "Upload cancelled."
    if isinstance(exc, LockstepError):
        return exc.message
    return str(exc) or exc.__class__.__name__


@dataclass
class NoticeBoard:
    """Queue of user-facing notices; the UI layer renders ``active``."""

    time_fn: Callable[[], float] = time.monotonic
    ttl: float = NOTICE_TTL
    notices: List[Notice] = field(default_factory=list)
    _ids: itertools.count = field(default_factory=itertools.count)

    def show(self, message: str, variant: Variant = Variant.DEFAULT) -> Notice:
        notice = Notice(f"notice-{next(self._ids)}", message, variant, self.time_fn())
        self.notices.append(notice)
        return notice

    def dismiss(self, notice_id: str):
        self.notices = [n for n in self.notices if n.id != notice_id]

    @property
    def active(self) -> List[Notice]:
        now = self.time_fn()
        self.notices = [n for n in self.notices if now - n.created_at < self.ttl]
        return list(self.notices)

    def report(self, outcome: Union[PublishResult, BaseException]) -> Optional[Notice]:
        """Surface a failure; successful results produce nothing."""
        if isinstance(outcome, PublishResult):
            if outcome.ok:
                return None
            outcome = outcome.error
        return self.show(notice_message(outcome), notice_variant(outcome))
