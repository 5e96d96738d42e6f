from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

import numpy as np

from ...utils.logger import get_logger
from ..errors import ModelLoadFailedError, ModelNotLoadedError
from ..settings.config import TARGET_SAMPLE_RATE
from .file_utils import (
    TRANSDUCER_DECODERS,
    TRANSDUCER_ENCODERS,
    TRANSDUCER_JOINERS,
    WHISPER_DECODERS,
    WHISPER_ENCODERS,
    WHISPER_TOKENS,
    find_file_by_suffix,
    find_file_exact,
)

logger = get_logger(__name__)

NUM_THREADS = 4


@dataclass
class TranscriptionResult:
    text: str
    timestamps: Optional[List[float]] = None
    tokens: Optional[List[str]] = None


class Engine(Protocol):
    """A loaded local speech-to-text model."""

    @property
    def is_loaded(self) -> bool: ...

    def load(self, model_path: Path) -> None: ...

    def transcribe(self, audio: np.ndarray) -> TranscriptionResult: ...

    def unload(self) -> None: ...


class SherpaOnnxBackend:
    """sherpa-onnx offline recognizer for Whisper and NeMo transducer layouts."""

    def __init__(self, model_type: str, num_threads: int = NUM_THREADS):
        self.model_type = model_type
        self.num_threads = num_threads
        self._recognizer = None

    def load(self, model_path: Path) -> None:
        import sherpa_onnx

        model_path = Path(model_path)
        if not model_path.is_dir():
            raise ModelLoadFailedError(
                f"Model directory not found: {model_path}. Download the model first."
            )

        logger.info(f"Loading model '{model_path.name}' as type '{self.model_type}'")
        try:
            if self.model_type == "whisper":
                self._recognizer = self._load_whisper(sherpa_onnx, model_path)
            else:
                self._recognizer = self._load_transducer(sherpa_onnx, model_path)
        except ModelLoadFailedError:
            self._recognizer = None
            raise
        except Exception as e:
            self._recognizer = None
            raise ModelLoadFailedError(
                f"Failed to load model from '{model_path}': {e}"
            ) from e

    def _load_whisper(self, sherpa_onnx, model_path: Path):
        files = {
            "encoder": find_file_by_suffix(model_path, *WHISPER_ENCODERS),
            "decoder": find_file_by_suffix(model_path, *WHISPER_DECODERS),
            "tokens": find_file_by_suffix(model_path, *WHISPER_TOKENS),
        }
        self._check_missing("Whisper", model_path, files)

        return sherpa_onnx.OfflineRecognizer.from_whisper(
            encoder=str(files["encoder"]),
            decoder=str(files["decoder"]),
            tokens=str(files["tokens"]),
            num_threads=self.num_threads,
            provider="cpu",
            debug=False,
            decoding_method="greedy_search",
        )

    def _load_transducer(self, sherpa_onnx, model_path: Path):
        files = {
            "encoder": find_file_exact(model_path, TRANSDUCER_ENCODERS),
            "decoder": find_file_exact(model_path, TRANSDUCER_DECODERS),
            "joiner": find_file_exact(model_path, TRANSDUCER_JOINERS),
            "tokens": find_file_exact(model_path, ["tokens.txt"]),
        }
        self._check_missing("Transducer", model_path, files)

        return sherpa_onnx.OfflineRecognizer.from_transducer(
            encoder=str(files["encoder"]),
            decoder=str(files["decoder"]),
            joiner=str(files["joiner"]),
            tokens=str(files["tokens"]),
            num_threads=self.num_threads,
            provider="cpu",
            debug=False,
            decoding_method="greedy_search",
            model_type="nemo_transducer",
        )

    @staticmethod
    def _check_missing(kind: str, model_path: Path, files: dict) -> None:
        missing = [name for name, path in files.items() if path is None]
        if missing:
            raise ModelLoadFailedError(
                f"Missing {kind} model files in {model_path}: {', '.join(missing)}"
            )

    def transcribe(self, audio: np.ndarray) -> TranscriptionResult:
        if self._recognizer is None:
            raise ModelNotLoadedError("Model not loaded. Call load() first.")

        stream = self._recognizer.create_stream()
        stream.accept_waveform(TARGET_SAMPLE_RATE, audio.astype(np.float32, copy=False))
        self._recognizer.decode_stream(stream)
        result = stream.result

        timestamps = list(getattr(result, "timestamps", None) or []) or None
        tokens = list(getattr(result, "tokens", None) or []) or None
        return TranscriptionResult(text=result.text, timestamps=timestamps, tokens=tokens)

    def unload(self) -> None:
        if self._recognizer is not None:
            del self._recognizer
            self._recognizer = None

    @property
    def is_loaded(self) -> bool:
        return self._recognizer is not None
