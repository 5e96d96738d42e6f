"""
Voice activity gating.

Splits a 16 kHz mono stream into 30 ms frames, scores each frame with a
speech scorer, and runs a small state machine with onset debounce and
hangover so word boundaries are not clipped and noisy input does not
toggle the gate. The gate only filters: closed segments are handed back
to the caller.
"""

import math
from collections import deque
from dataclasses import dataclass
from enum import Enum, auto
from typing import Deque, List, Optional, Protocol

import numpy as np
import webrtcvad

from ...utils.logger import get_logger
from ..settings.config import TARGET_SAMPLE_RATE

logger = get_logger(__name__)

FRAME_MS = 30
FRAME_SAMPLES = TARGET_SAMPLE_RATE * FRAME_MS // 1000  # 480


class SpeechScorer(Protocol):
    def score(self, frame: np.ndarray) -> float: ...


class WebRtcScorer:
    """Fraction of voiced 10 ms sub-frames according to WebRTC's VAD."""

    SUBFRAME_SAMPLES = TARGET_SAMPLE_RATE // 100

    def __init__(self, aggressiveness: int = 2):
        self._vad = webrtcvad.Vad(aggressiveness)

    def score(self, frame: np.ndarray) -> float:
        pcm = (np.clip(frame, -1.0, 1.0) * 32767).astype(np.int16)
        step = self.SUBFRAME_SAMPLES

        total = 0
        voiced = 0
        for start in range(0, len(pcm) - step + 1, step):
            total += 1
            if self._vad.is_speech(pcm[start : start + step].tobytes(), TARGET_SAMPLE_RATE):
                voiced += 1

        return voiced / total if total else 0.0


class EnergyScorer:
    """RMS level in dBFS mapped through a logistic curve."""

    def __init__(self, threshold_db: float = -40.0, slope: float = 0.5):
        self.threshold_db = threshold_db
        self.slope = slope

    def score(self, frame: np.ndarray) -> float:
        if frame.size == 0:
            return 0.0
        rms = float(np.sqrt(np.mean(np.square(frame, dtype=np.float64))))
        db = 20.0 * math.log10(max(rms, 1e-10))
        x = self.slope * (db - self.threshold_db)
        # Clamp to keep exp() in range for digital silence
        return 1.0 / (1.0 + math.exp(-max(min(x, 50.0), -50.0)))


def create_scorer(backend: str = "webrtc", aggressiveness: int = 2) -> SpeechScorer:
    if backend == "webrtc":
        return WebRtcScorer(aggressiveness)
    if backend == "energy":
        return EnergyScorer()
    raise ValueError(f"Unknown VAD backend: {backend}")


class GateState(Enum):
    IDLE = auto()
    IN_SPEECH = auto()
    TRAILING_SILENCE = auto()


@dataclass
class SpeechSegment:
    samples: np.ndarray
    start_frame: int
    frame_count: int
    speech_frames: int
    forced: bool = False

    @property
    def duration_seconds(self) -> float:
        return len(self.samples) / TARGET_SAMPLE_RATE


def _ms_to_frames(ms: float) -> int:
    return int(round(ms / FRAME_MS))


class VoiceActivityGate:
    """
    Speech/silence state machine over 30 ms frames.

    IDLE -> IN_SPEECH after ``onset_frames`` consecutive speech frames.
    IN_SPEECH -> TRAILING_SILENCE on the first silent frame.
    TRAILING_SILENCE -> IN_SPEECH if speech resumes within the hangover.
    TRAILING_SILENCE -> IDLE after ``hangover_frames`` silent frames; the
    segment is closed and returned.
    """

    def __init__(
        self,
        scorer: SpeechScorer,
        threshold: float = 0.5,
        onset_frames: int = 2,
        hangover_frames: int = 15,
        prefill_frames: int = 10,
        max_segment_frames: int = 4000,
    ):
        if onset_frames < 1:
            raise ValueError("onset_frames must be at least 1")
        if max_segment_frames <= onset_frames + prefill_frames:
            raise ValueError("max_segment_frames must exceed onset + prefill frames")

        self._scorer = scorer
        self.threshold = threshold
        self.onset_frames = onset_frames
        self.hangover_frames = hangover_frames
        self.prefill_frames = prefill_frames
        self.max_segment_frames = max_segment_frames

        self._state = GateState.IDLE
        self._pending = np.empty(0, dtype=np.float32)
        self._prefill: Deque[np.ndarray] = deque(maxlen=prefill_frames)
        self._onset: List[np.ndarray] = []
        self._segment: List[np.ndarray] = []
        self._segment_start = 0
        self._speech_frames = 0
        self._silence_run = 0
        self._frame_index = 0
        self.last_probability = 0.0

    @classmethod
    def from_settings(cls, settings, scorer: Optional[SpeechScorer] = None):
        if scorer is None:
            scorer = create_scorer(settings.vad_backend, settings.vad_aggressiveness)
        return cls(
            scorer=scorer,
            threshold=settings.vad_threshold,
            onset_frames=max(1, math.ceil(settings.vad_onset_ms / FRAME_MS)),
            hangover_frames=_ms_to_frames(settings.vad_hangover_ms),
            prefill_frames=_ms_to_frames(settings.vad_prefill_ms),
            max_segment_frames=int(settings.max_segment_seconds * 1000 / FRAME_MS),
        )

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def has_open_segment(self) -> bool:
        return self._state != GateState.IDLE

    def push(self, samples: np.ndarray) -> List[SpeechSegment]:
        """Feed 16 kHz mono samples; returns the segments closed by this call."""
        if self._pending.size:
            data = np.concatenate((self._pending, samples.astype(np.float32, copy=False)))
        else:
            data = samples.astype(np.float32, copy=False)

        closed: List[SpeechSegment] = []
        n_frames = len(data) // FRAME_SAMPLES
        for i in range(n_frames):
            frame = data[i * FRAME_SAMPLES : (i + 1) * FRAME_SAMPLES]
            segment = self._process_frame(frame)
            if segment is not None:
                closed.append(segment)

        self._pending = data[n_frames * FRAME_SAMPLES :].copy()
        return closed

    def flush(self) -> Optional[SpeechSegment]:
        """Close any open segment; unfinished onsets are discarded."""
        segment = None
        if self.has_open_segment and self._segment:
            if self._pending.size:
                self._segment.append(self._pending)
            if len(self._segment) >= self.onset_frames:
                segment = self._close_segment()
            else:
                logger.debug(
                    f"Dropping {len(self._segment)}-frame tail shorter than activation window"
                )

        self.reset()
        return segment

    def reset(self) -> None:
        self._state = GateState.IDLE
        self._pending = np.empty(0, dtype=np.float32)
        self._prefill.clear()
        self._onset = []
        self._segment = []
        self._speech_frames = 0
        self._silence_run = 0

    def _process_frame(self, frame: np.ndarray) -> Optional[SpeechSegment]:
        probability = float(self._scorer.score(frame))
        self.last_probability = probability
        is_speech = probability >= self.threshold
        index = self._frame_index
        self._frame_index += 1

        if self._state == GateState.IDLE:
            if is_speech:
                self._onset.append(frame)
                if len(self._onset) >= self.onset_frames:
                    self._open_segment(index)
            else:
                for pending in self._onset:
                    self._prefill.append(pending)
                self._onset = []
                self._prefill.append(frame)
            return None

        self._segment.append(frame)

        if is_speech:
            self._speech_frames += 1
            self._silence_run = 0
            self._state = GateState.IN_SPEECH
        else:
            self._silence_run += 1
            self._state = GateState.TRAILING_SILENCE
            if self._silence_run >= self.hangover_frames:
                segment = self._close_segment()
                self._state = GateState.IDLE
                return segment

        if len(self._segment) >= self.max_segment_frames:
            segment = self._close_segment(forced=True)
            if self._state == GateState.TRAILING_SILENCE:
                self._state = GateState.IDLE
            else:
                self._segment_start = self._frame_index
            return segment

        return None

    def _open_segment(self, index: int) -> None:
        prefill = list(self._prefill)
        self._segment = prefill + self._onset
        self._segment_start = index - len(self._onset) + 1 - len(prefill)
        self._speech_frames = len(self._onset)
        self._silence_run = 0
        self._prefill.clear()
        self._onset = []
        self._state = GateState.IN_SPEECH

    def _close_segment(self, forced: bool = False) -> SpeechSegment:
        segment = SpeechSegment(
            samples=np.concatenate(self._segment).astype(np.float32, copy=False),
            start_frame=self._segment_start,
            frame_count=len(self._segment),
            speech_frames=self._speech_frames,
            forced=forced,
        )
        logger.debug(
            f"Closed speech segment: {segment.duration_seconds:.2f}s, "
            f"{segment.speech_frames}/{segment.frame_count} speech frames"
            + (" (max length)" if forced else "")
        )
        self._segment = []
        self._speech_frames = 0
        self._silence_run = 0
        return segment
