"""
Outbound status events.

The core never talks to a UI directly; it publishes typed events on an
``EventBus`` and whatever front end is attached subscribes to them.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from ..utils.logger import get_logger
from .errors import ErrorCode

logger = get_logger(__name__)


@dataclass(frozen=True)
class RecordingStateChanged:
    session_id: Optional[str]
    state: str
    previous: str


@dataclass(frozen=True)
class AudioLevel:
    session_id: str
    level: float
    spectrum: Tuple[float, ...] = ()


@dataclass(frozen=True)
class DownloadProgress:
    model_id: str
    bytes_done: int
    bytes_total: int

    @property
    def percentage(self) -> float:
        if self.bytes_total <= 0:
            return 0.0
        return self.bytes_done / self.bytes_total * 100.0


@dataclass(frozen=True)
class ModelStatusChanged:
    model_id: str
    status: str
    previous: str
    error: Optional[str] = None


@dataclass(frozen=True)
class TranscriptionCompleted:
    session_id: str
    text: str
    raw_text: str
    latency_ms: int
    provider: str


@dataclass(frozen=True)
class DeviceLost:
    session_id: Optional[str]
    device: Optional[str]
    reason: str


@dataclass(frozen=True)
class ErrorEvent:
    code: ErrorCode
    message: str
    model_id: Optional[str] = None
    session_id: Optional[str] = None


Listener = Callable[[object], None]


@dataclass
class EventBus:
    """Fan-out of core events to subscribed listeners."""

    _listeners: List[Listener] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: object) -> None:
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.exception(
                    f"Event listener failed on {type(event).__name__}: {e}"
                )


class EventRecorder:
    """Listener that keeps every event; handy for tests and diagnostics."""

    def __init__(self):
        self.events: List[object] = []
        self._lock = threading.Lock()

    def __call__(self, event: object) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: type) -> List[object]:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]
