"""
Speech-to-text providers.

A provider turns 16 kHz mono float audio into text. The set of providers
is closed (``ProviderKind``); the local one borrows the loaded engine
from the ``ModelManager``, the others call a hosted API.
"""

import io
from enum import Enum
from typing import Optional, Protocol

import numpy as np
import scipy.io.wavfile as wav

from ...utils.logger import get_logger
from ..asr.manager import ModelManager
from ..audio.audio_processor import AudioChunker, join_transcripts
from ..errors import InferenceFailedError, MurmurError
from ..settings.config import TARGET_SAMPLE_RATE

logger = get_logger(__name__)


class ProviderKind(str, Enum):
    LOCAL = "local"
    MISTRAL = "mistral"
    DEEPGRAM = "deepgram"
    ASSEMBLYAI = "assemblyai"
    GLADIA = "gladia"

    @property
    def is_remote(self) -> bool:
        return self is not ProviderKind.LOCAL


class Provider(Protocol):
    kind: ProviderKind

    def transcribe(self, audio: np.ndarray, language: str = "auto") -> str: ...


def encode_wav(audio: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """16-bit PCM mono WAV bytes for float audio in [-1, 1]."""
    pcm = (np.clip(audio, -1.0, 1.0) * 32767).astype(np.int16)
    buffer = io.BytesIO()
    wav.write(buffer, sample_rate, pcm)
    return buffer.getvalue()


class LocalEngineProvider:
    """Runs the engine lent by the model manager, chunking long audio."""

    kind = ProviderKind.LOCAL

    def __init__(self, model_manager: ModelManager, chunker: Optional[AudioChunker] = None):
        self._model_manager = model_manager
        self._chunker = chunker or AudioChunker()

    def transcribe(self, audio: np.ndarray, language: str = "auto") -> str:
        chunks = self._chunker.split(audio)
        with self._model_manager.lease() as engine:
            texts = []
            for i, chunk in enumerate(chunks):
                try:
                    result = engine.transcribe(chunk)
                except MurmurError:
                    raise
                except Exception as e:
                    raise InferenceFailedError(
                        f"Local inference failed on chunk {i + 1}/{len(chunks)}: {e}",
                        model_id=self._model_manager.loaded_model_id,
                    ) from e
                texts.append(result.text)

        if len(texts) > 1:
            logger.debug(f"Joined {len(texts)} chunk transcripts")
        return join_transcripts(texts)
