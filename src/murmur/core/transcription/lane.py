"""
Per-provider request lanes.

Each lane is one worker thread over a FIFO queue, so a lane runs one
request at a time. Results are released strictly in submission order:
finished requests wait in a release buffer until every earlier sequence
number has been released or cancelled.
"""

import queue
import threading
import time
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from ...utils.logger import get_logger
from ..errors import InferenceFailedError, MurmurError, ProviderRequestFailedError
from ..providers import ProviderKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class TranscriptionRequest:
    session_id: str
    audio: np.ndarray
    provider: ProviderKind
    language: str
    translate: bool
    sequence: int
    submitted_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class TranscriptOutput:
    session_id: str
    raw_text: str
    corrected_text: str
    latency_ms: int
    provider_used: str


Runner = Callable[[TranscriptionRequest], TranscriptOutput]
ReleaseCallback = Callable[["TranscriptionHandle", Optional[TranscriptOutput], Optional[MurmurError]], None]


class TranscriptionHandle:
    """
    Caller's view of a submitted request.

    ``result()`` returns the ``TranscriptOutput``, raises the request's
    ``MurmurError``, or raises ``concurrent.futures.CancelledError``.
    """

    def __init__(self, request: TranscriptionRequest):
        self.request = request
        self._future: Future = Future()
        self._lock = threading.Lock()
        self._discarded = False
        self._delivered = False

    @property
    def session_id(self) -> str:
        return self.request.session_id

    @property
    def sequence(self) -> int:
        return self.request.sequence

    def result(self, timeout: Optional[float] = None) -> TranscriptOutput:
        return self._future.result(timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self._future.exception(timeout)

    def cancel(self) -> bool:
        """Cancel a pending request, or discard the result of a running one."""
        if self._future.cancel():
            logger.info(f"Cancelled pending request for session {self.session_id}")
            return True
        with self._lock:
            if self._delivered or self._future.done():
                return False
            self._discarded = True
        logger.info(f"Result of running request for session {self.session_id} will be discarded")
        return True

    def done(self) -> bool:
        return self._future.done()

    def cancelled(self) -> bool:
        return self._future.cancelled() or self._discarded

    def add_done_callback(self, fn: Callable[["TranscriptionHandle"], None]) -> None:
        self._future.add_done_callback(lambda _: fn(self))

    def _claim(self) -> bool:
        """Reserve the result for delivery unless it was discarded first."""
        with self._lock:
            if self._discarded:
                return False
            self._delivered = True
            return True


class Lane:
    def __init__(
        self,
        kind: ProviderKind,
        on_release: Optional[ReleaseCallback] = None,
    ):
        self.kind = kind
        self._on_release = on_release
        self._queue: "queue.Queue[Optional[Tuple[TranscriptionHandle, Runner]]]" = queue.Queue()
        self._lock = threading.Lock()
        self._next_sequence = 0
        self._next_release = 0
        self._finished: Dict[
            int, Tuple[TranscriptionHandle, Optional[TranscriptOutput], Optional[MurmurError]]
        ] = {}
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name=f"murmur-lane-{kind.value}", daemon=True
        )
        self._thread.start()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(
        self,
        session_id: str,
        audio: np.ndarray,
        language: str,
        translate: bool,
        runner: Runner,
    ) -> TranscriptionHandle:
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Lane {self.kind.value} is shut down")
            request = TranscriptionRequest(
                session_id=session_id,
                audio=audio,
                provider=self.kind,
                language=language,
                translate=translate,
                sequence=self._next_sequence,
            )
            self._next_sequence += 1
            handle = TranscriptionHandle(request)
            self._queue.put((handle, runner))

        logger.debug(
            f"Queued request {request.sequence} for session {session_id} on {self.kind.value} lane"
        )
        return handle

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            handle, runner = item

            if not handle._future.set_running_or_notify_cancel():
                self._release(handle, None, None)
                continue

            output: Optional[TranscriptOutput] = None
            error: Optional[MurmurError] = None
            try:
                output = runner(handle.request)
            except MurmurError as e:
                error = e
            except Exception as e:
                logger.exception(f"Unexpected error on {self.kind.value} lane: {e}")
                if self.kind is ProviderKind.LOCAL:
                    error = InferenceFailedError(str(e))
                else:
                    error = ProviderRequestFailedError(str(e))

            if error is not None and error.session_id is None:
                error.session_id = handle.session_id
            self._release(handle, output, error)

    def _release(
        self,
        handle: TranscriptionHandle,
        output: Optional[TranscriptOutput],
        error: Optional[MurmurError],
    ) -> None:
        with self._lock:
            self._finished[handle.sequence] = (handle, output, error)
            ready = []
            while self._next_release in self._finished:
                ready.append(self._finished.pop(self._next_release))
                self._next_release += 1

        for handle, output, error in ready:
            self._deliver(handle, output, error)

    def _deliver(
        self,
        handle: TranscriptionHandle,
        output: Optional[TranscriptOutput],
        error: Optional[MurmurError],
    ) -> None:
        future = handle._future
        if future.cancelled():
            return

        if not handle._claim():
            logger.info(f"Discarding result for cancelled session {handle.session_id}")
            future.set_exception(CancelledError())
            return

        if self._on_release is not None:
            self._on_release(handle, output, error)

        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(output)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True

        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                handle, _ = item
                handle.cancel()
                self._release(handle, None, None)

        self._queue.put(None)
        if wait:
            self._thread.join(timeout)
