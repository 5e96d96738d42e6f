"""
Splitting of long dictations for local engines.

Local models are trained on windows of about 30 seconds; anything longer
is cut at the quietest point near each boundary so words are not split,
transcribed piece by piece, and the texts joined again.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

import numpy as np
from scipy import signal

from ...utils.logger import get_logger
from ..settings.config import MAX_CHUNK_SECONDS, TARGET_SAMPLE_RATE

logger = get_logger(__name__)

MIN_CHUNK_SECONDS = 5.0
SILENCE_LEVEL = 0.02
SILENCE_WINDOW_SECONDS = 0.3
OVERLAP_SECONDS = 0.1
ANALYSIS_HOP_SECONDS = 0.05


@dataclass
class ChunkBounds:
    start: int
    end: int

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start) / TARGET_SAMPLE_RATE


class AudioChunker:
    """Silence-aware splitter over 16 kHz mono audio."""

    def __init__(
        self,
        max_seconds: float = MAX_CHUNK_SECONDS,
        min_seconds: float = MIN_CHUNK_SECONDS,
        silence_level: float = SILENCE_LEVEL,
        silence_window: float = SILENCE_WINDOW_SECONDS,
        overlap: float = OVERLAP_SECONDS,
    ):
        if min_seconds >= max_seconds:
            raise ValueError("min_seconds must be below max_seconds")
        self.max_samples = int(max_seconds * TARGET_SAMPLE_RATE)
        self.min_samples = int(min_seconds * TARGET_SAMPLE_RATE)
        self.silence_level = silence_level
        self.silence_samples = int(silence_window * TARGET_SAMPLE_RATE)
        self.overlap_samples = int(overlap * TARGET_SAMPLE_RATE)

    def needs_chunking(self, audio: np.ndarray) -> bool:
        return len(audio) > self.max_samples

    def plan(self, audio: np.ndarray) -> List[ChunkBounds]:
        """Chunk boundaries, before overlap is added."""
        total = len(audio)
        if total <= self.max_samples:
            return [ChunkBounds(0, total)]

        envelope = self._envelope(audio)
        bounds: List[ChunkBounds] = []
        start = 0
        while total - start > self.max_samples:
            cut = self._quietest_point(envelope, start + self.min_samples, start + self.max_samples)
            if cut is None:
                cut = start + self.max_samples
            bounds.append(ChunkBounds(start, cut))
            start = cut
        bounds.append(ChunkBounds(start, total))
        return bounds

    def split(self, audio: np.ndarray) -> List[np.ndarray]:
        bounds = self.plan(audio)
        if len(bounds) == 1:
            return [audio]

        chunks = []
        for i, b in enumerate(bounds):
            lo = max(0, b.start - (self.overlap_samples if i > 0 else 0))
            hi = min(len(audio), b.end + self.overlap_samples)
            chunks.append(audio[lo:hi])

        logger.info(
            f"Split {len(audio) / TARGET_SAMPLE_RATE:.1f}s of audio into {len(chunks)} chunks"
        )
        return chunks

    def _envelope(self, audio: np.ndarray) -> np.ndarray:
        level = np.abs(audio.astype(np.float32, copy=False))
        peak = float(level.max()) if level.size else 0.0
        if peak > 0:
            level = level / peak

        window = int(0.1 * TARGET_SAMPLE_RATE)
        if len(level) > window:
            level = signal.fftconvolve(level, np.ones(window) / window, mode="same")
        return level

    def _quietest_point(self, envelope: np.ndarray, lo: int, hi: int) -> Optional[int]:
        """Middle of the quietest silent window between lo and hi."""
        hop = max(1, int(ANALYSIS_HOP_SECONDS * TARGET_SAMPLE_RATE))
        best = None
        best_score = float("inf")

        for i in range(hi - self.silence_samples, lo - 1, -hop):
            if i < 0 or i + self.silence_samples > len(envelope):
                continue
            window = envelope[i : i + self.silence_samples]
            peak = float(window.max())
            if peak >= self.silence_level:
                continue
            score = float(window.mean()) + peak * 0.1
            if score < best_score:
                best_score = score
                best = i + self.silence_samples // 2

        return best


def join_transcripts(texts: Iterable[str]) -> str:
    parts = [t.strip() for t in texts if t and t.strip()]
    return " ".join(" ".join(parts).split())
