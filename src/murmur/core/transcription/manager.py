import threading
import time
from typing import Dict, Optional

import numpy as np

from ...utils.logger import get_logger
from ..asr.manager import ModelManager
from ..errors import InvalidAudioInputError, ModelNotLoadedError, MurmurError
from ..events import EventBus, TranscriptionCompleted
from ..providers import Provider, ProviderKind, ProviderRegistry, select_provider_kind
from ..settings import Settings
from ..settings.config import TARGET_SAMPLE_RATE
from ..transcript_processor import TranscriptTranslator, apply_custom_words, is_english
from .lane import Lane, TranscriptionHandle, TranscriptionRequest, TranscriptOutput

logger = get_logger(__name__)


class TranscriptionManager:
    """
    Routes finished recordings to the configured provider.

    One lane per provider kind; post-processing (custom words, then
    optional translation) is the same whichever provider produced the text.
    """

    def __init__(
        self,
        settings: Settings,
        event_bus: EventBus,
        registry: ProviderRegistry,
        model_manager: ModelManager,
        translator: Optional[TranscriptTranslator] = None,
    ):
        self._settings = settings
        self._event_bus = event_bus
        self._registry = registry
        self._model_manager = model_manager
        self._translator = translator

        self._lock = threading.Lock()
        self._lanes: Dict[ProviderKind, Lane] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    def update_settings(self, settings: Settings) -> None:
        """Takes effect for the next submitted request."""
        self._settings = settings

    def _lane(self, kind: ProviderKind) -> Lane:
        with self._lock:
            lane = self._lanes.get(kind)
            if lane is None:
                lane = Lane(kind, on_release=self._on_release)
                self._lanes[kind] = lane
            return lane

    def submit(
        self,
        session_id: str,
        audio: np.ndarray,
        language: Optional[str] = None,
        translate: Optional[bool] = None,
        provider: Optional[ProviderKind] = None,
    ) -> TranscriptionHandle:
        """
        Queue 16 kHz mono audio for transcription.

        Raises:
            ModelNotLoadedError: Local provider with no active model.
            ProviderUnauthenticatedError: Remote provider without API key.
            InvalidAudioInputError: Audio is not a 1-D sample array.
        """
        settings = self._settings
        kind = provider or select_provider_kind(settings)

        try:
            if kind is ProviderKind.LOCAL and not self._model_manager.has_active_model:
                raise ModelNotLoadedError(
                    "No local model selected; download and select a model first"
                )
            provider_impl = self._registry.resolve(settings, kind)

            samples = np.array(audio, dtype=np.float32)
            if samples.ndim != 1:
                raise InvalidAudioInputError(
                    f"Expected 1-D 16 kHz mono audio, got shape {samples.shape}"
                )
            if samples.size and not np.isfinite(samples).all():
                raise InvalidAudioInputError("Audio contains non-finite samples")
        except MurmurError as e:
            e.session_id = session_id
            logger.error(f"Cannot transcribe session {session_id}: {e}")
            self._event_bus.emit(e.to_event())
            raise

        samples.setflags(write=False)
        language = language or settings.selected_language
        if translate is None:
            translate = settings.translate_to_english

        logger.info(
            f"Submitting {len(samples) / TARGET_SAMPLE_RATE:.2f}s of audio from session {session_id} "
            f"to {kind.value}"
        )
        return self._lane(kind).submit(
            session_id,
            samples,
            language,
            translate,
            runner=lambda request: self._run(request, provider_impl, settings),
        )

    def _run(
        self, request: TranscriptionRequest, provider: Provider, settings: Settings
    ) -> TranscriptOutput:
        start = time.monotonic()
        raw_text = provider.transcribe(request.audio, request.language)
        logger.info(
            f"Transcription ({request.provider.value}) finished in "
            f"{time.monotonic() - start:.2f}s: '{raw_text[:50]}{'...' if len(raw_text) > 50 else ''}'"
        )
        if not raw_text.strip():
            logger.warning(f"Transcription returned empty result for session {request.session_id}")

        text = self._post_process(raw_text, request, settings)
        latency_ms = int((time.monotonic() - request.submitted_at) * 1000)
        return TranscriptOutput(
            session_id=request.session_id,
            raw_text=raw_text,
            corrected_text=text,
            latency_ms=latency_ms,
            provider_used=request.provider.value,
        )

    def _post_process(
        self, raw_text: str, request: TranscriptionRequest, settings: Settings
    ) -> str:
        text = raw_text.strip()
        if settings.custom_words:
            text = apply_custom_words(
                text, settings.custom_words, settings.word_correction_threshold
            )

        if request.translate and text and not is_english(request.language):
            translator = self._translator or TranscriptTranslator.from_settings(settings)
            text = translator.translate(text, request.language)

        return text

    def _on_release(
        self,
        handle: TranscriptionHandle,
        output: Optional[TranscriptOutput],
        error: Optional[MurmurError],
    ) -> None:
        if error is not None:
            logger.error(f"Transcription failed for session {handle.session_id}: {error}")
            self._event_bus.emit(error.to_event())
            return

        self._event_bus.emit(
            TranscriptionCompleted(
                session_id=output.session_id,
                text=output.corrected_text,
                raw_text=output.raw_text,
                latency_ms=output.latency_ms,
                provider=output.provider_used,
            )
        )

    def shutdown(self) -> None:
        with self._lock:
            lanes = list(self._lanes.values())
            self._lanes.clear()
        for lane in lanes:
            lane.shutdown()
        logger.info("Transcription manager shut down")
