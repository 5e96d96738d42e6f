"""Shared fixtures and fakes for the dictation core tests."""

import io
import tarfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pytest
import requests

from murmur.core.asr.backends import TranscriptionResult
from murmur.core.asr.models import ModelInfo
from murmur.core.errors import DeviceUnavailableError, ModelLoadFailedError
from murmur.core.events import EventBus, EventRecorder
from murmur.core.settings import Settings

SAMPLE_RATE = 16000


def tone(seconds: float, amplitude: float = 0.5, rate: int = SAMPLE_RATE) -> np.ndarray:
    t = np.arange(int(round(seconds * rate))) / rate
    return (amplitude * np.sin(2 * np.pi * 440 * t)).astype(np.float32)


def silence(seconds: float, rate: int = SAMPLE_RATE) -> np.ndarray:
    return np.zeros(int(round(seconds * rate)), dtype=np.float32)


def whisper_files(prefix: str = "tiny") -> Dict[str, bytes]:
    return {
        f"{prefix}-encoder.onnx": b"encoder",
        f"{prefix}-decoder.onnx": b"decoder",
        f"{prefix}-tokens.txt": b"a 0\nb 1\n",
    }


def build_archive(top_dir: str, files: Dict[str, bytes]) -> bytes:
    """tar.bz2 bytes with every file under one top-level directory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:bz2") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(f"{top_dir}/{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def install_model(cache_dir: Path, model_id: str, prefix: str = "tiny") -> Path:
    model_dir = Path(cache_dir) / model_id
    model_dir.mkdir(parents=True, exist_ok=True)
    for name, data in whisper_files(prefix).items():
        (model_dir / name).write_bytes(data)
    return model_dir


def make_model_info(model_id: str, **kwargs) -> ModelInfo:
    fields = {
        "name": model_id.replace("-", " ").title(),
        "type": "whisper",
        "url": f"https://models.example.com/{model_id}.tar.bz2",
        "filename": f"{model_id}.tar.bz2",
    }
    fields.update(kwargs)
    return ModelInfo(id=model_id, **fields)


class FakeCapture:
    """In-memory CaptureDevice; tests push blocks and pull the plug."""

    def __init__(
        self,
        device: Optional[str] = None,
        sample_rate: int = SAMPLE_RATE,
        channels: int = 1,
        failures: int = 0,
        error: Optional[Exception] = None,
    ):
        self.device = device
        self.sample_rate = sample_rate
        self.channels = channels
        self.failures = failures
        self.error = error
        self.open_calls = 0
        self.is_open = False
        self.closed = False
        self._on_block = None
        self._on_lost = None

    def open(self, on_block, on_lost) -> None:
        self.open_calls += 1
        if self.open_calls <= self.failures:
            raise self.error or DeviceUnavailableError("Device or resource busy")
        self._on_block = on_block
        self._on_lost = on_lost
        self.is_open = True
        self.closed = False

    def close(self) -> None:
        self.is_open = False
        self.closed = True

    def feed(self, samples: np.ndarray, block: int = 1600) -> None:
        for start in range(0, len(samples), block):
            self._on_block(np.asarray(samples[start : start + block], dtype=np.float32))

    def lose(self, reason: str = "Device unplugged") -> None:
        self._on_lost(reason)


class FakeCaptureFactory:
    def __init__(self, **capture_kwargs):
        self.capture_kwargs = capture_kwargs
        self.created: List[FakeCapture] = []

    def __call__(self, device: Optional[str]) -> FakeCapture:
        capture = FakeCapture(device=device, **self.capture_kwargs)
        self.created.append(capture)
        return capture

    @property
    def last(self) -> FakeCapture:
        return self.created[-1]


class FakeEngine:
    """Engine stand-in; ``gate`` holds transcribe() until set."""

    def __init__(self, text: str = "hello world", fail_load: bool = False):
        self.text = text
        self.fail_load = fail_load
        self.loaded_path: Optional[Path] = None
        self.unloaded = False
        self.calls: List[np.ndarray] = []
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()

    @property
    def is_loaded(self) -> bool:
        return self.loaded_path is not None and not self.unloaded

    def load(self, model_path: Path) -> None:
        if self.fail_load:
            raise ModelLoadFailedError(f"Corrupt model at {model_path}")
        self.loaded_path = Path(model_path)

    def transcribe(self, audio: np.ndarray) -> TranscriptionResult:
        self.calls.append(audio)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        return TranscriptionResult(text=self.text)

    def unload(self) -> None:
        self.unloaded = True


class FakeBackendFactory:
    def __init__(self, text: str = "hello world"):
        self.text = text
        self.fail_ids = set()
        self.engines: List[FakeEngine] = []
        self.model_ids: List[str] = []

    def __call__(self, info: ModelInfo) -> FakeEngine:
        engine = FakeEngine(self.text, fail_load=info.id in self.fail_ids)
        self.engines.append(engine)
        self.model_ids.append(info.id)
        return engine


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        fail_after: Optional[int] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.status_code = status_code
        self.body = body
        self.headers = headers or {}
        self.fail_after = fail_after
        self.gate = gate

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size: int = 1):
        sent = 0
        for start in range(0, len(self.body), chunk_size):
            if self.gate is not None:
                self.gate.wait(5)
            if self.fail_after is not None and sent >= self.fail_after:
                raise requests.ConnectionError("Connection reset by peer")
            chunk = self.body[start : start + chunk_size]
            sent += len(chunk)
            yield chunk


class FakeDownloadSession:
    """
    Serves one payload over ``get`` with HTTP Range support.

    ``interruptions`` lists, per request, the byte count after which the
    connection drops.
    """

    def __init__(
        self,
        payload: bytes,
        interruptions=(),
        ignore_range: bool = False,
        status_code: int = 200,
        gate: Optional[threading.Event] = None,
    ):
        self.payload = payload
        self.interruptions = list(interruptions)
        self.ignore_range = ignore_range
        self.status_code = status_code
        self.gate = gate
        self.requests: List[Dict[str, str]] = []
        self._lock = threading.Lock()

    def get(self, url, stream=False, timeout=None, headers=None):
        headers = dict(headers or {})
        with self._lock:
            self.requests.append(headers)
            fail_after = self.interruptions.pop(0) if self.interruptions else None

        if self.status_code != 200:
            return FakeResponse(self.status_code)

        offset = 0
        status = 200
        range_header = headers.get("Range")
        if range_header and not self.ignore_range:
            offset = int(range_header[len("bytes=") : -1])
            if offset >= len(self.payload):
                return FakeResponse(416)
            status = 206

        body = self.payload[offset:]
        return FakeResponse(
            status,
            body,
            headers={"content-length": str(len(body))},
            fail_after=fail_after,
            gate=self.gate,
        )


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    events = EventRecorder()
    event_bus.subscribe(events)
    return events


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "models"


@pytest.fixture
def settings(cache_dir):
    return Settings(vad_backend="energy", cache_dir=cache_dir)


@pytest.fixture
def catalog():
    return [make_model_info("test-whisper"), make_model_info("other-whisper")]


@pytest.fixture
def archive():
    return build_archive("test-whisper", whisper_files())


@pytest.fixture
def backend_factory():
    return FakeBackendFactory()


@pytest.fixture
def capture_factory():
    return FakeCaptureFactory()
