"""
Conversion of captured audio to 16 kHz mono.

``resample`` is the whole-buffer polyphase path; ``StreamingResampler``
is the frame-by-frame path used by the pipeline worker, carrying its
interpolation phase across frames.
"""

from math import gcd
from typing import Optional

import numpy as np
from scipy import signal

from ..errors import InvalidAudioInputError
from ..settings.config import TARGET_SAMPLE_RATE


def _validate(samples: np.ndarray, sample_rate: int, channels: Optional[int]) -> np.ndarray:
    if sample_rate is None or sample_rate <= 0:
        raise InvalidAudioInputError(f"Invalid sample rate: {sample_rate}")

    audio = np.asarray(samples)
    if audio.ndim not in (1, 2):
        raise InvalidAudioInputError(
            f"Audio must be 1-D or 2-D (frames, channels), got {audio.ndim}-D"
        )

    actual_channels = 1 if audio.ndim == 1 else audio.shape[1]
    if channels is not None:
        if channels <= 0:
            raise InvalidAudioInputError(f"Invalid channel count: {channels}")
        if actual_channels != channels:
            raise InvalidAudioInputError(
                f"Expected {channels} channel(s), got {actual_channels}"
            )
    if actual_channels == 0:
        raise InvalidAudioInputError("Audio has zero channels")

    if audio.dtype == np.int16:
        audio = audio.astype(np.float32) / 32768.0
    elif audio.dtype != np.float32:
        audio = audio.astype(np.float32)

    if audio.size and not np.isfinite(audio).all():
        raise InvalidAudioInputError("Audio contains non-finite samples")

    return audio


def downmix(samples: np.ndarray) -> np.ndarray:
    """Average all channels into one."""
    if samples.ndim == 1:
        return samples
    if samples.shape[1] == 1:
        return samples[:, 0]
    return samples.mean(axis=1, dtype=np.float32)


def resample(
    samples: np.ndarray,
    sample_rate: int,
    channels: Optional[int] = None,
) -> np.ndarray:
    """
    Convert audio at ``sample_rate`` to mono float32 at 16 kHz.

    Args:
        samples: Array of shape (frames,) or (frames, channels), float or int16
        sample_rate: Source rate in Hz
        channels: Expected channel count, checked against the array shape

    Returns:
        1-D float32 array at 16 kHz with ceil(frames * 16000 / sample_rate)
        samples.

    Raises:
        InvalidAudioInputError: On zero channels, bad rate or non-finite samples.
    """
    audio = downmix(_validate(samples, sample_rate, channels))

    if sample_rate == TARGET_SAMPLE_RATE or audio.size == 0:
        return audio

    divisor = gcd(int(sample_rate), TARGET_SAMPLE_RATE)
    up = TARGET_SAMPLE_RATE // divisor
    down = int(sample_rate) // divisor

    return signal.resample_poly(audio, up, down).astype(np.float32, copy=False)


class StreamingResampler:
    """
    Frame-by-frame linear resampler.

    Keeps the last input sample and the fractional read position between
    calls, so a stream of frames produces the same number of output
    samples as resampling the concatenated buffer.
    """

    def __init__(self, source_rate: int, channels: int = 1):
        if source_rate <= 0:
            raise InvalidAudioInputError(f"Invalid sample rate: {source_rate}")
        if channels <= 0:
            raise InvalidAudioInputError(f"Invalid channel count: {channels}")

        self.source_rate = int(source_rate)
        self.channels = channels
        self._step = self.source_rate / TARGET_SAMPLE_RATE
        self._position = 0.0
        self._tail: Optional[np.float32] = None

    @property
    def is_identity(self) -> bool:
        return self.source_rate == TARGET_SAMPLE_RATE

    def reset(self) -> None:
        self._position = 0.0
        self._tail = None

    def process(self, samples: np.ndarray) -> np.ndarray:
        mono = downmix(_validate(samples, self.source_rate, self.channels))

        if self.is_identity or mono.size == 0:
            return mono

        if self._tail is None:
            buffer = mono
        else:
            buffer = np.concatenate(([self._tail], mono))

        last_index = buffer.size - 1
        if self._position > last_index:
            # Not enough input yet for the next output sample
            self._position -= last_index
            self._tail = buffer[-1]
            return np.empty(0, dtype=np.float32)

        count = int(np.floor((last_index - self._position) / self._step)) + 1
        positions = self._position + self._step * np.arange(count)
        out = np.interp(positions, np.arange(buffer.size), buffer).astype(np.float32)

        # Re-anchor so the next call's index 0 is this call's last sample
        self._position = positions[-1] + self._step - last_index
        self._tail = buffer[-1]
        return out
