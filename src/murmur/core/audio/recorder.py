"""
Recording state machine.

``AudioRecordingManager`` owns the capture device for the lifetime of a
session. The device callback only enqueues frames; a per-session
pipeline worker resamples, gates and meters them. On ``stop()`` the
collected speech is handed to the session sink.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

import numpy as np

from ...utils.logger import get_logger
from ..errors import AudioPipelineError, DeviceLostError, DeviceUnavailableError, MurmurError
from ..events import AudioLevel, DeviceLost, EventBus, RecordingStateChanged
from ..settings import RecordingMode, Settings
from ..settings.config import (
    DEVICE_OPEN_ATTEMPTS,
    DEVICE_OPEN_BACKOFF_SECONDS,
    METERING_INTERVAL_SECONDS,
    TARGET_SAMPLE_RATE,
)
from .capture import AudioFrame, CaptureDevice, FrameQueue, SoundDeviceCapture
from .metering import LevelMeter
from .resampler import StreamingResampler, downmix
from .vad import SpeechScorer, VoiceActivityGate

logger = get_logger(__name__)

SessionSink = Callable[[str, np.ndarray], Any]
CaptureFactory = Callable[[Optional[str]], CaptureDevice]


class RecordingState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RECORDING = "recording"
    FLUSHING = "flushing"
    ERROR = "error"


@dataclass
class RecordingSession:
    mode: RecordingMode
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.monotonic)
    segments: List[np.ndarray] = field(default_factory=list)

    @property
    def speech_samples(self) -> int:
        return sum(len(s) for s in self.segments)

    def audio(self) -> np.ndarray:
        if not self.segments:
            return np.empty(0, dtype=np.float32)
        return np.concatenate(self.segments).astype(np.float32, copy=False)


class _PipelineWorker:
    """Drains the frame queue for one session on its own thread."""

    def __init__(
        self,
        session: RecordingSession,
        queue: FrameQueue,
        gate: VoiceActivityGate,
        event_bus: EventBus,
        on_failure: Optional[Callable[[RecordingSession, MurmurError], None]] = None,
    ):
        self.session = session
        self.gate = gate
        self.error: Optional[MurmurError] = None
        self._queue = queue
        self._event_bus = event_bus
        self._on_failure = on_failure
        self._meter = LevelMeter()
        self._resampler: Optional[StreamingResampler] = None
        self._last_meter = 0.0
        self._last_sequence = -1
        self._stop_requested = threading.Event()
        self._cancelled = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"murmur-pipeline-{session.id[:8]}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Process what is queued, then exit."""
        self._stop_requested.set()
        self._queue.wake()
        self._join()

    def cancel(self, wait: bool = True) -> None:
        """Exit without processing queued frames."""
        self._cancelled.set()
        self._queue.wake()
        if wait:
            self._join()

    def _join(self) -> None:
        if threading.current_thread() is not self._thread and self._thread.is_alive():
            self._thread.join()

    def _run(self) -> None:
        try:
            while not self._cancelled.is_set():
                self._queue.wait(0.05)
                for frame in self._queue.drain():
                    if self._cancelled.is_set():
                        return
                    self._process(frame)

                if self._stop_requested.is_set() and not len(self._queue):
                    return
        except Exception as e:
            logger.exception(f"Pipeline worker for session {self.session.id} failed: {e}")
            self.error = AudioPipelineError(
                f"Audio processing failed: {e}", session_id=self.session.id
            )
            self._event_bus.emit(self.error.to_event())
            if self._on_failure is not None:
                self._on_failure(self.session, self.error)

    def _process(self, frame: AudioFrame) -> None:
        if frame.sequence <= self._last_sequence:
            logger.warning(f"Out-of-order frame {frame.sequence} dropped")
            return
        self._last_sequence = frame.sequence

        if self._resampler is None or self._resampler.source_rate != frame.sample_rate:
            self._resampler = StreamingResampler(frame.sample_rate, frame.channels)

        try:
            audio = self._resampler.process(frame.samples)
        except MurmurError as e:
            logger.warning(f"Skipping invalid audio frame {frame.sequence}: {e}")
            return

        for segment in self.gate.push(audio):
            self.session.segments.append(segment.samples)

        self._emit_level(frame)

    def _emit_level(self, frame: AudioFrame) -> None:
        now = time.monotonic()
        if now - self._last_meter < METERING_INTERVAL_SECONDS:
            return
        self._last_meter = now

        mono = downmix(np.asarray(frame.samples, dtype=np.float32))
        self._event_bus.emit(
            AudioLevel(
                session_id=self.session.id,
                level=self._meter.level(mono),
                spectrum=tuple(self._meter.spectrum(mono, frame.sample_rate)),
            )
        )


class AudioRecordingManager:
    """
    Shortcut-driven recording sessions.

    States: IDLE -> ARMED -> RECORDING -> FLUSHING -> IDLE, with ERROR
    entered on device loss or pipeline failure and left through
    ``select_device`` or ``cancel``.
    """

    def __init__(
        self,
        settings: Settings,
        event_bus: EventBus,
        sink: SessionSink,
        capture_factory: Optional[CaptureFactory] = None,
        scorer: Optional[SpeechScorer] = None,
        open_attempts: int = DEVICE_OPEN_ATTEMPTS,
        open_backoff: float = DEVICE_OPEN_BACKOFF_SECONDS,
    ):
        self._settings = settings
        self._event_bus = event_bus
        self._sink = sink
        self._capture_factory = capture_factory or (
            lambda device: SoundDeviceCapture(device)
        )
        self._scorer = scorer
        self._open_attempts = max(1, open_attempts)
        self._open_backoff = open_backoff

        self.device: Optional[str] = settings.input_device
        self.mode: RecordingMode = settings.recording_mode

        self._lock = threading.RLock()
        self._state = RecordingState.IDLE
        self._session: Optional[RecordingSession] = None
        self._capture: Optional[CaptureDevice] = None
        self._worker: Optional[_PipelineWorker] = None
        self._queue = FrameQueue(settings.frame_queue_size)
        self._sequence = 0

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def is_recording(self) -> bool:
        return self._state == RecordingState.RECORDING

    @property
    def dropped_frames(self) -> int:
        return self._queue.dropped

    def _set_state(self, state: RecordingState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        session_id = self._session.id if self._session else None
        logger.debug(f"Recording state {previous.value} -> {state.value}")
        self._event_bus.emit(
            RecordingStateChanged(
                session_id=session_id, state=state.value, previous=previous.value
            )
        )

    def start(self, mode: Optional[RecordingMode] = None) -> RecordingSession:
        """
        Open the input device and begin a session.

        Raises:
            DeviceUnavailableError: No device, or it could not be opened.
        """
        with self._lock:
            if self._state == RecordingState.ERROR:
                error = DeviceUnavailableError(
                    "Recording failed; select a device or cancel to continue",
                    retryable=False,
                )
                self._event_bus.emit(error.to_event())
                raise error
            if self._state != RecordingState.IDLE:
                return self._session

            session = RecordingSession(mode=mode or self.mode)
            self._session = session
            if self._queue.maxsize != self._settings.frame_queue_size:
                self._queue = FrameQueue(self._settings.frame_queue_size)
            self._queue.clear()
            self._sequence = 0
            self._set_state(RecordingState.ARMED)

            capture = self._capture_factory(self.device)
            try:
                self._open_with_retry(capture, session)
            except DeviceUnavailableError as e:
                e.session_id = session.id
                self._set_state(RecordingState.IDLE)
                self._session = None
                self._event_bus.emit(e.to_event())
                raise

            self._capture = capture
            gate = VoiceActivityGate.from_settings(self._settings, self._scorer)
            self._worker = _PipelineWorker(
                session, self._queue, gate, self._event_bus, on_failure=self._on_pipeline_failed
            )
            self._worker.start()
            self._set_state(RecordingState.RECORDING)

            logger.info(f"Recording session {session.id} started ({session.mode.value})")
            return session

    def _open_with_retry(self, capture: CaptureDevice, session: RecordingSession) -> None:
        delay = self._open_backoff
        for attempt in range(1, self._open_attempts + 1):
            try:
                capture.open(
                    on_block=lambda samples: self._on_block(session, capture, samples),
                    on_lost=lambda reason: self._on_device_lost(session, reason),
                )
                return
            except DeviceUnavailableError as e:
                if not e.retryable or attempt == self._open_attempts:
                    raise
                logger.warning(
                    f"Input device busy (attempt {attempt}/{self._open_attempts}): {e}"
                )
                time.sleep(delay)
                delay *= 2

    def _on_block(
        self, session: RecordingSession, capture: CaptureDevice, samples: np.ndarray
    ) -> None:
        # Runs on the audio thread: enqueue only
        if self._session is not session or self._state == RecordingState.ERROR:
            return
        self._queue.put(
            AudioFrame(
                samples=samples,
                sample_rate=capture.sample_rate,
                channels=capture.channels,
                sequence=self._sequence,
            )
        )
        self._sequence += 1

    def stop(self) -> Optional[Any]:
        """
        End the session and hand captured speech to the sink.

        Returns the sink's result, or None when nothing was captured.
        """
        with self._lock:
            if self._state not in (RecordingState.RECORDING, RecordingState.ARMED):
                return None

            session = self._session
            self._set_state(RecordingState.FLUSHING)
            self._close_capture()

            worker, self._worker = self._worker, None
            if worker is not None:
                worker.stop()
                if worker.error is not None:
                    logger.warning(
                        f"Session {session.id} discarded after pipeline failure: {worker.error}"
                    )
                    session.segments.clear()
                    self._set_state(RecordingState.IDLE)
                    self._session = None
                    return None
                tail = worker.gate.flush()
                if tail is not None:
                    session.segments.append(tail.samples)

            audio = session.audio()
            elapsed = time.monotonic() - session.started_at
            logger.info(
                f"Recording session {session.id} stopped after {elapsed:.2f}s, "
                f"{len(audio) / TARGET_SAMPLE_RATE:.2f}s of speech"
            )

            result = None
            if audio.size:
                try:
                    result = self._sink(session.id, audio)
                except MurmurError as e:
                    logger.warning(f"Session {session.id} was not transcribed: {e}")
            else:
                logger.info(f"No speech captured in session {session.id}")

            self._set_state(RecordingState.IDLE)
            self._session = None
            return result

    def cancel(self) -> None:
        """Discard the current session without transcribing it."""
        with self._lock:
            if self._state == RecordingState.IDLE:
                return
            session_id = self._session.id if self._session else None
            self._teardown()
            self._set_state(RecordingState.IDLE)
            self._session = None
            logger.info(f"Recording session {session_id} cancelled")

    def select_device(self, name: Optional[str]) -> None:
        """Switch input device; recovers from ERROR to IDLE."""
        with self._lock:
            self.device = name
            logger.info(f"Input device set to {name or 'system default'}")
            if self._state == RecordingState.ERROR:
                self._teardown()
                self._set_state(RecordingState.IDLE)
                self._session = None

    def set_mode(self, mode: RecordingMode) -> None:
        self.mode = mode

    def update_settings(self, settings: Settings) -> None:
        """
        Apply a new settings snapshot from the next session on.

        Gate thresholds and the frame queue size are read when a session
        starts; a running session keeps the values it started with.
        """
        with self._lock:
            self._settings = settings
            self.mode = settings.recording_mode

    def on_key_down(self) -> Optional[Any]:
        try:
            if self.mode == RecordingMode.PUSH_TO_TALK:
                self.start(RecordingMode.PUSH_TO_TALK)
                return None

            if self._state in (RecordingState.RECORDING, RecordingState.ARMED):
                return self.stop()
            if self._state == RecordingState.IDLE:
                self.start(RecordingMode.TOGGLE)
        except DeviceUnavailableError as e:
            logger.error(f"Could not start recording: {e}")
        return None

    def on_key_up(self) -> Optional[Any]:
        session = self._session
        if (
            session is not None
            and session.mode == RecordingMode.PUSH_TO_TALK
            and self._state in (RecordingState.RECORDING, RecordingState.ARMED)
        ):
            return self.stop()
        return None

    def _on_device_lost(self, session: RecordingSession, reason: str) -> None:
        self._fail_session(session, DeviceLostError(reason, session_id=session.id), reason)

    def _on_pipeline_failed(self, session: RecordingSession, error: MurmurError) -> None:
        self._fail_session(session, error, lost_reason=None)

    def _fail_session(
        self, session: RecordingSession, error: MurmurError, lost_reason: Optional[str]
    ) -> None:
        # Called from the audio or pipeline thread, which stop() may be waiting on
        if not self._lock.acquire(blocking=False):
            threading.Thread(
                target=self._fail_session_locked,
                args=(session, error, lost_reason),
                name=f"murmur-session-failure-{session.id[:8]}",
                daemon=True,
            ).start()
            return
        try:
            self._enter_error(session, error, lost_reason)
        finally:
            self._lock.release()

    def _fail_session_locked(
        self, session: RecordingSession, error: MurmurError, lost_reason: Optional[str]
    ) -> None:
        with self._lock:
            self._enter_error(session, error, lost_reason)

    def _enter_error(
        self, session: RecordingSession, error: MurmurError, lost_reason: Optional[str]
    ) -> None:
        if self._session is not session or self._state not in (
            RecordingState.ARMED,
            RecordingState.RECORDING,
        ):
            logger.info(f"Ignoring failure of finished session {session.id}: {error}")
            return

        logger.error(f"Recording session {session.id} failed: {error}")
        self._set_state(RecordingState.ERROR)

        # Leave the stream open; cancel() or select_device() tears it down
        if self._worker is not None:
            self._worker.cancel(wait=False)
        session.segments.clear()
        self._queue.clear()

        if lost_reason is not None:
            self._event_bus.emit(
                DeviceLost(session_id=session.id, device=self.device, reason=lost_reason)
            )
            self._event_bus.emit(error.to_event())

    def _close_capture(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.close()

    def _teardown(self) -> None:
        self._close_capture()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            worker.gate.reset()
        if self._session is not None:
            self._session.segments.clear()
        self._queue.clear()

    def shutdown(self) -> None:
        self.cancel()
