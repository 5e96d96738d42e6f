"""
Composition root of the dictation core.

``DictationService`` builds every manager from one ``Settings`` snapshot
and one ``EventBus``. A front end forwards shortcut presses to it and
subscribes to the bus for status and transcripts.
"""

from typing import Callable, Optional

import requests

from .core.asr import ModelManager, ModelStore
from .core.asr.manager import BackendFactory
from .core.audio import AudioRecordingManager
from .core.audio.recorder import CaptureFactory
from .core.audio.vad import SpeechScorer
from .core.events import EventBus
from .core.providers import LocalEngineProvider, ProviderRegistry
from .core.settings import Settings
from .core.transcript_processor import TranscriptTranslator
from .core.transcription import TranscriptionManager
from .utils.logger import get_logger, shutdown_logging

logger = get_logger(__name__)


class DictationService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        event_bus: Optional[EventBus] = None,
        capture_factory: Optional[CaptureFactory] = None,
        backend_factory: Optional[BackendFactory] = None,
        scorer: Optional[SpeechScorer] = None,
        http_session: Optional[requests.Session] = None,
        translator: Optional[TranscriptTranslator] = None,
    ):
        self.settings = settings or Settings()
        self.event_bus = event_bus or EventBus()
        session = http_session or requests.Session()

        self.model_store = ModelStore(
            self.settings.resolve_cache_dir(), self.event_bus, session=session
        )
        self.model_manager = ModelManager(
            self.model_store,
            self.event_bus,
            unload_timeout=self.settings.model_unload_timeout,
            backend_factory=backend_factory,
        )
        self.providers = ProviderRegistry(
            LocalEngineProvider(self.model_manager), session=session
        )
        self.transcription = TranscriptionManager(
            self.settings,
            self.event_bus,
            self.providers,
            self.model_manager,
            translator=translator,
        )
        self.recorder = AudioRecordingManager(
            self.settings,
            self.event_bus,
            sink=self.transcription.submit,
            capture_factory=capture_factory,
            scorer=scorer,
        )

    def subscribe(self, listener: Callable[[object], None]) -> Callable[[], None]:
        return self.event_bus.subscribe(listener)

    def start(self) -> Optional[str]:
        """Select the configured model, falling back to any downloaded one."""
        model_id = self.settings.model_id
        if model_id and self.model_store.get(model_id) is not None:
            if self.model_store.is_installed(model_id):
                self.model_manager.select(model_id)
                return model_id
            logger.warning(f"Configured model {model_id} is not downloaded")
        return self.model_manager.auto_select_model()

    def on_shortcut_pressed(self):
        return self.recorder.on_key_down()

    def on_shortcut_released(self):
        return self.recorder.on_key_up()

    def cancel_recording(self) -> None:
        self.recorder.cancel()

    def download_model(self, model_id: str):
        return self.model_store.download(model_id)

    def select_model(self, model_id: str) -> bool:
        return self.model_manager.select(model_id)

    def update_settings(self, settings: Settings) -> None:
        """Apply a new settings snapshot; recording and model state are kept."""
        self.settings = settings
        self.transcription.update_settings(settings)
        self.model_manager.set_unload_timeout(settings.model_unload_timeout)
        self.recorder.update_settings(settings)
        if settings.input_device != self.recorder.device:
            self.recorder.select_device(settings.input_device)

    def shutdown(self) -> None:
        logger.info("Shutting down dictation service")
        self.recorder.shutdown()
        self.transcription.shutdown()
        self.model_manager.shutdown()
        shutdown_logging()
