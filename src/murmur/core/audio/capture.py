"""
Microphone capture.

The device callback runs on PortAudio's real-time thread, so it only
copies the block into a bounded ``FrameQueue``; everything else happens
on the pipeline worker.
"""

import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Protocol

import numpy as np
import sounddevice as sd

from ...utils.logger import get_logger
from ..errors import DeviceUnavailableError

logger = get_logger(__name__)


@dataclass
class AudioDevice:
    name: str
    index: int
    channels: int
    default_sample_rate: float


@dataclass
class AudioFrame:
    samples: np.ndarray
    sample_rate: int
    channels: int
    sequence: int


FrameCallback = Callable[[np.ndarray], None]
LostCallback = Callable[[str], None]


class CaptureDevice(Protocol):
    """An input stream the recording manager can open and close."""

    sample_rate: int
    channels: int

    def open(self, on_block: FrameCallback, on_lost: LostCallback) -> None: ...

    def close(self) -> None: ...


class FrameQueue:
    """
    Bounded frame queue that drops the oldest frame when full.

    ``put`` never blocks, so it is safe from the device callback.
    """

    def __init__(self, maxsize: int = 256):
        self._frames: Deque[AudioFrame] = deque(maxlen=maxsize)
        self._lock = threading.Lock()
        self._available = threading.Event()
        self.dropped = 0

    @property
    def maxsize(self) -> int:
        return self._frames.maxlen

    def put(self, frame: AudioFrame) -> None:
        with self._lock:
            if len(self._frames) == self._frames.maxlen:
                self.dropped += 1
            self._frames.append(frame)
            self._available.set()

    def drain(self) -> List[AudioFrame]:
        with self._lock:
            frames = list(self._frames)
            self._frames.clear()
            self._available.clear()
        return frames

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._available.wait(timeout)

    def wake(self) -> None:
        self._available.set()

    def clear(self) -> None:
        with self._lock:
            self._frames.clear()
            self._available.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)


def list_input_devices() -> List[AudioDevice]:
    devices = []

    for i, device in enumerate(sd.query_devices()):
        if device["max_input_channels"] > 0:
            devices.append(
                AudioDevice(
                    name=device["name"],
                    index=i,
                    channels=device["max_input_channels"],
                    default_sample_rate=device["default_samplerate"],
                )
            )

    return devices


class SoundDeviceCapture:
    """Capture from a PortAudio input device at its native rate."""

    def __init__(self, device: Optional[str] = None, channels: int = 1):
        self.device = device
        self.channels = channels
        self.sample_rate = 16000
        self._stream: Optional[sd.InputStream] = None
        self._on_lost: Optional[LostCallback] = None
        self._closing = False

    def _resolve_device(self) -> AudioDevice:
        try:
            devices = list_input_devices()
        except sd.PortAudioError as e:
            raise DeviceUnavailableError(f"Audio subsystem unavailable: {e}") from e

        if not devices:
            raise DeviceUnavailableError("No audio input device found", retryable=False)

        if self.device is None:
            try:
                default_index = sd.default.device[0]
            except (TypeError, IndexError):
                default_index = None
            for device in devices:
                if device.index == default_index:
                    return device
            return devices[0]

        for device in devices:
            if device.name == self.device:
                return device

        raise DeviceUnavailableError(
            f"Input device '{self.device}' is not connected", retryable=False
        )

    def open(self, on_block: FrameCallback, on_lost: LostCallback) -> None:
        device = self._resolve_device()
        self.sample_rate = int(device.default_sample_rate)
        self.channels = min(self.channels, device.channels) or 1
        self._on_lost = on_lost
        self._closing = False

        def callback(indata: np.ndarray, frames: int, time, status) -> None:
            if status and status.input_overflow:
                logger.debug("Input overflow reported by audio device")
            on_block(indata.copy())

        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                device=device.index,
                callback=callback,
                finished_callback=self._on_finished,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            self._stream = None
            raise DeviceUnavailableError(f"Audio device error: {e}") from e

        logger.info(
            f"Capture started on '{device.name}' at {self.sample_rate} Hz, "
            f"{self.channels} channel(s)"
        )

    def _on_finished(self) -> None:
        # PortAudio also calls this after a normal stop; only report losses
        if not self._closing and self._on_lost is not None:
            self._on_lost("Input stream stopped unexpectedly")

    def close(self) -> None:
        self._closing = True
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            logger.warning(f"Error closing input stream: {e}")
