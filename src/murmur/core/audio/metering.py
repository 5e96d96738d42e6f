from typing import List, Optional, Tuple

import numpy as np

SPECTRUM_BAND_COUNT = 8


class LevelMeter:
    """Level and log-spaced spectrum bands for recording feedback."""

    def __init__(self, band_count: int = SPECTRUM_BAND_COUNT):
        self._band_count = band_count
        self._window: Optional[np.ndarray] = None
        self._bins: List[Tuple[int, int]] = []
        self._bins_key: Optional[Tuple[int, float]] = None

    def level(self, samples: np.ndarray) -> float:
        if samples.size == 0:
            return 0.0
        return float(min(1.0, np.abs(samples).mean() * 10))

    def spectrum(self, mono: np.ndarray, sample_rate: float) -> List[float]:
        frames = mono.shape[0]
        if frames < 8:
            return [0.0] * self._band_count

        if self._window is None or self._window.shape[0] != frames:
            self._window = np.hanning(frames)

        mag = np.abs(np.fft.rfft(mono * self._window))
        if mag.size == 0:
            return [0.0] * self._band_count

        log_mag = np.log1p(mag)
        max_mag = float(np.max(log_mag))
        if max_mag <= 0.0:
            return [0.0] * self._band_count

        energies: List[float] = []
        for start, end in self._get_bins(frames, sample_rate):
            if end <= start:
                energies.append(0.0)
                continue
            band_energy = float(np.mean(log_mag[start:end])) / max_mag
            energies.append(min(1.0, max(0.0, band_energy)))
        return energies

    def _get_bins(self, frames: int, sample_rate: float) -> List[Tuple[int, int]]:
        if self._bins_key == (frames, sample_rate):
            return self._bins

        low_freq = 80.0
        high_freq = min(8000.0, (sample_rate / 2.0) * 0.95)
        if high_freq <= low_freq:
            high_freq = low_freq * 2.0

        edges = np.logspace(
            np.log10(low_freq), np.log10(high_freq), num=self._band_count + 1
        )
        freqs = np.fft.rfftfreq(frames, 1.0 / sample_rate)

        bins: List[Tuple[int, int]] = []
        for idx in range(self._band_count):
            start = int(np.searchsorted(freqs, edges[idx], side="left"))
            end = int(np.searchsorted(freqs, edges[idx + 1], side="right"))
            if end <= start:
                end = min(start + 1, len(freqs))
            bins.append((start, end))

        self._bins_key = (frames, sample_rate)
        self._bins = bins
        return bins
