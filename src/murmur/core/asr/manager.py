"""
Lifecycle of the one loaded local model.

The engine is owned here and lent to callers through ``lease()``. Swaps,
explicit unloads and the idle-unload timer all take the same lifecycle
lock; a timer started before a newer swap or request carries a stale
generation number and does nothing when it fires.
"""

import gc
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from ...utils.logger import get_logger
from ..errors import ModelLoadFailedError, ModelNotLoadedError
from ..events import EventBus
from ..settings import ModelUnloadTimeout
from .backends import Engine, SherpaOnnxBackend
from .models import ModelInfo
from .store import ModelStatus, ModelStore

logger = get_logger(__name__)

BackendFactory = Callable[[ModelInfo], Engine]
TimerFactory = Callable[..., threading.Timer]


def _default_backend(info: ModelInfo) -> Engine:
    return SherpaOnnxBackend(info.type)


class ModelManager:
    def __init__(
        self,
        store: ModelStore,
        event_bus: EventBus,
        unload_timeout: ModelUnloadTimeout = ModelUnloadTimeout.NEVER,
        backend_factory: Optional[BackendFactory] = None,
        timer_factory: TimerFactory = threading.Timer,
    ):
        self._store = store
        self._event_bus = event_bus
        self._unload_timeout = unload_timeout
        self._backend_factory = backend_factory or _default_backend
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._released = threading.Condition(self._lock)
        self._engine: Optional[Engine] = None
        self._loaded_id: Optional[str] = None
        self._selected_id: Optional[str] = None
        self._pending_id: Optional[str] = None
        self._in_flight = 0
        self._generation = 0
        self._timer: Optional[threading.Timer] = None
        self._closed = False

    @property
    def active_model_id(self) -> Optional[str]:
        """Model used for the next request, loaded or not."""
        return self._selected_id

    @property
    def loaded_model_id(self) -> Optional[str]:
        return self._loaded_id

    @property
    def pending_model_id(self) -> Optional[str]:
        return self._pending_id

    @property
    def has_active_model(self) -> bool:
        return self._selected_id is not None

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def unload_timeout(self) -> ModelUnloadTimeout:
        return self._unload_timeout

    def set_unload_timeout(self, timeout: ModelUnloadTimeout) -> None:
        with self._lock:
            self._unload_timeout = timeout
            self._generation += 1
            self._cancel_timer()
            if not self._in_flight:
                self._schedule_idle_unload(after_request=False)

    def select(self, model_id: str) -> bool:
        """
        Make ``model_id`` the active model and load it.

        Returns False when a request holds the engine; the swap is then
        applied as soon as the lease is released.

        Raises:
            ModelNotLoadedError: Unknown model, or not downloaded yet.
            ModelLoadFailedError: The engine could not load the files.
        """
        with self._lock:
            entry = self._store.get(model_id)
            if entry is None:
                raise ModelNotLoadedError(f"Unknown model: {model_id}", model_id=model_id)

            if model_id == self._loaded_id:
                self._selected_id = model_id
                self._pending_id = None
                return True

            failed_on_disk = (
                entry.status == ModelStatus.FAILED and self._store.is_installed(model_id)
            )
            if entry.status != ModelStatus.PRESENT and not failed_on_disk:
                raise ModelNotLoadedError(
                    f"Model '{model_id}' is not downloaded; download it before selecting",
                    model_id=model_id,
                )

            self._generation += 1
            self._cancel_timer()

            if self._in_flight:
                logger.info(f"Model swap to {model_id} queued until the current request ends")
                self._pending_id = model_id
                return False

            self._pending_id = None
            self._swap(model_id)
            self._schedule_idle_unload(after_request=False)
            return True

    def auto_select_model(self) -> Optional[str]:
        """Select the first downloaded catalog model when none is active."""
        with self._lock:
            if self._selected_id is not None:
                return self._selected_id
            for entry in self._store.entries():
                if entry.status == ModelStatus.PRESENT:
                    logger.info(f"Auto-selecting downloaded model {entry.id}")
                    self.select(entry.id)
                    return entry.id
        logger.info("No downloaded model available to auto-select")
        return None

    @contextmanager
    def lease(self) -> Iterator[Engine]:
        """
        Borrow the loaded engine for one request.

        Reloads the active model if the idle timer unloaded it.

        Raises:
            ModelNotLoadedError: No model is selected.
            ModelLoadFailedError: Reloading failed.
        """
        with self._lock:
            if self._closed or self._selected_id is None:
                raise ModelNotLoadedError("No transcription model is selected")

            self._generation += 1
            self._cancel_timer()
            if self._engine is None:
                logger.info(f"Reloading {self._selected_id} for a new request")
                self._load(self._selected_id)
            self._in_flight += 1
            engine = self._engine

        try:
            yield engine
        finally:
            self._release()

    def _release(self) -> None:
        with self._lock:
            self._in_flight -= 1
            if self._in_flight:
                return
            self._released.notify_all()

            if self._pending_id is not None:
                model_id, self._pending_id = self._pending_id, None
                try:
                    self._swap(model_id)
                except ModelLoadFailedError as e:
                    logger.error(f"Queued swap to {model_id} failed: {e}")

            if not self._closed:
                self._schedule_idle_unload(after_request=True)

    def unload(self) -> None:
        """Unload the engine once no request holds it; the selection is kept."""
        with self._lock:
            self._generation += 1
            self._cancel_timer()
            while self._in_flight:
                self._released.wait()
            self._unload()

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            self._pending_id = None
        self.unload()
        logger.info("Model manager shut down")

    def _swap(self, model_id: str) -> None:
        self._unload()
        self._selected_id = model_id
        try:
            self._load(model_id)
        except ModelLoadFailedError:
            # Local requests fail fast until the next successful select
            self._selected_id = None
            raise

    def _load(self, model_id: str) -> None:
        entry = self._store.get(model_id)
        if entry.status == ModelStatus.FAILED and self._store.is_installed(model_id):
            self._store.set_status(model_id, ModelStatus.PRESENT)
        path = self._store.model_path(model_id)
        self._store.set_status(model_id, ModelStatus.LOADING)

        engine = self._backend_factory(entry.info)
        try:
            engine.load(path)
        except Exception as e:
            if isinstance(e, ModelLoadFailedError):
                error = e
            else:
                error = ModelLoadFailedError(f"Failed to load {model_id}: {e}")
            error.model_id = model_id
            logger.error(f"Failed to load model {model_id}: {error}")
            self._store.set_status(model_id, ModelStatus.FAILED, error=str(error))
            self._event_bus.emit(error.to_event())
            if error is e:
                raise
            raise error from e

        self._engine = engine
        self._loaded_id = model_id
        self._store.set_status(model_id, ModelStatus.LOADED)
        logger.info(f"Model {model_id} loaded")

    def _unload(self) -> None:
        engine, model_id = self._engine, self._loaded_id
        if engine is None:
            return

        self._store.set_status(model_id, ModelStatus.UNLOADING)
        try:
            engine.unload()
        finally:
            self._engine = None
            self._loaded_id = None
            gc.collect()
            self._store.set_status(model_id, ModelStatus.PRESENT)
        logger.info(f"Model {model_id} unloaded")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_idle_unload(self, after_request: bool) -> None:
        seconds = self._unload_timeout.to_seconds()
        if seconds is None or self._engine is None:
            return

        if seconds <= 0:
            if after_request:
                self._unload()
            return

        generation = self._generation
        self._timer = self._timer_factory(seconds, self._on_idle_timeout, args=(generation,))
        self._timer.daemon = True
        self._timer.start()

    def _on_idle_timeout(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._in_flight or self._engine is None:
                logger.debug("Ignoring stale idle-unload timer")
                return
            logger.info(
                f"Unloading {self._loaded_id} after {self._unload_timeout.value} idle"
            )
            self._timer = None
            self._unload()
