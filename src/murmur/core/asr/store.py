"""
Local model cache.

Every catalog model lives in its own directory under the cache root.
Downloads stream into ``<id>.partial`` (resumed with HTTP Range on
retry), archives are unpacked into ``<id>.extracting`` and renamed into
place only once complete, so a half-written model directory is never
mistaken for a present one.
"""

import hashlib
import os
import shutil
import tarfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import requests

from ...utils.logger import get_logger
from ..errors import (
    DownloadCancelledError,
    DownloadFailedError,
    ModelInUseError,
    ModelNotLoadedError,
    MurmurError,
)
from ..events import DownloadProgress, EventBus, ModelStatusChanged
from ..settings.config import (
    DOWNLOAD_BACKOFF_BASE_SECONDS,
    DOWNLOAD_BACKOFF_CAP_SECONDS,
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_MAX_ATTEMPTS,
)
from .file_utils import EXTRACTING_SUFFIX, PARTIAL_SUFFIX, is_valid_model_dir, remove_path
from .models import AVAILABLE_MODELS, ModelInfo

logger = get_logger(__name__)


class ModelStatus(str, Enum):
    NOT_PRESENT = "not_present"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    PRESENT = "present"
    LOADING = "loading"
    LOADED = "loaded"
    UNLOADING = "unloading"
    FAILED = "failed"


IN_USE_STATUSES = (ModelStatus.LOADING, ModelStatus.LOADED, ModelStatus.UNLOADING)
ON_DISK_STATUSES = (ModelStatus.PRESENT,) + IN_USE_STATUSES


@dataclass
class ModelEntry:
    info: ModelInfo
    path: Path
    status: ModelStatus = ModelStatus.NOT_PRESENT
    bytes_done: int = 0
    bytes_total: int = 0
    error: Optional[str] = None

    @property
    def id(self) -> str:
        return self.info.id


class DownloadTask:
    """Handle on one in-flight download."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        self.bytes_done = 0
        self.bytes_total = 0
        self.error: Optional[MurmurError] = None
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done_event.is_set()

    @property
    def succeeded(self) -> bool:
        return self.done and self.error is None

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done_event.wait(timeout)

    def _finish(self, error: Optional[MurmurError] = None) -> None:
        self.error = error
        self._done_event.set()


class ModelStore:
    """Download, verify, list and evict cached models."""

    def __init__(
        self,
        cache_root: Path,
        event_bus: EventBus,
        catalog: Optional[List[ModelInfo]] = None,
        session: Optional[requests.Session] = None,
        max_attempts: int = DOWNLOAD_MAX_ATTEMPTS,
        backoff_base: float = DOWNLOAD_BACKOFF_BASE_SECONDS,
        backoff_cap: float = DOWNLOAD_BACKOFF_CAP_SECONDS,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    ):
        self.cache_root = Path(cache_root)
        self._event_bus = event_bus
        self._session = session or requests.Session()
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.chunk_size = chunk_size

        self._lock = threading.RLock()
        self._entries: Dict[str, ModelEntry] = {
            info.id: ModelEntry(info=info, path=self.cache_root / info.id)
            for info in (AVAILABLE_MODELS if catalog is None else catalog)
        }
        self._downloads: Dict[str, DownloadTask] = {}

        self.refresh()

    def _partial_path(self, model_id: str) -> Path:
        return self.cache_root / f"{model_id}{PARTIAL_SUFFIX}"

    def _staging_path(self, model_id: str) -> Path:
        return self.cache_root / f"{model_id}{EXTRACTING_SUFFIX}"

    def _require(self, model_id: str) -> ModelEntry:
        entry = self._entries.get(model_id)
        if entry is None:
            raise ModelNotLoadedError(f"Unknown model: {model_id}", model_id=model_id)
        return entry

    def _is_installed(self, entry: ModelEntry) -> bool:
        if entry.info.archive:
            return is_valid_model_dir(entry.path, entry.info.type)
        return (entry.path / entry.info.filename).is_file()

    def is_installed(self, model_id: str) -> bool:
        with self._lock:
            return self._is_installed(self._require(model_id))

    def entries(self) -> List[ModelEntry]:
        with self._lock:
            return list(self._entries.values())

    def get(self, model_id: str) -> Optional[ModelEntry]:
        with self._lock:
            return self._entries.get(model_id)

    def status(self, model_id: str) -> ModelStatus:
        with self._lock:
            return self._require(model_id).status

    def model_path(self, model_id: str) -> Path:
        with self._lock:
            entry = self._require(model_id)
            if entry.status not in ON_DISK_STATUSES:
                raise ModelNotLoadedError(
                    f"Model '{model_id}' is not downloaded", model_id=model_id
                )
            return entry.path

    def present_models(self) -> List[ModelEntry]:
        with self._lock:
            return [e for e in self._entries.values() if e.status in ON_DISK_STATUSES]

    def set_status(
        self, model_id: str, status: ModelStatus, error: Optional[str] = None
    ) -> None:
        with self._lock:
            entry = self._require(model_id)
            previous = entry.status
            entry.status = status
            entry.error = error if status == ModelStatus.FAILED else None
        if previous != status:
            logger.debug(f"Model {model_id}: {previous.value} -> {status.value}")
            self._event_bus.emit(
                ModelStatusChanged(
                    model_id=model_id,
                    status=status.value,
                    previous=previous.value,
                    error=error,
                )
            )

    def refresh(self) -> None:
        """Re-read the cache root, dropping interrupted extractions."""
        if not self.cache_root.is_dir():
            return

        with self._lock:
            in_flight = set(self._downloads)

            for child in self.cache_root.iterdir():
                if not child.name.endswith(EXTRACTING_SUFFIX):
                    continue
                if child.name[: -len(EXTRACTING_SUFFIX)] in in_flight:
                    continue
                logger.info(f"Removing interrupted extraction {child.name}")
                try:
                    remove_path(child)
                except OSError as e:
                    logger.warning(f"Could not remove {child}: {e}")

            updates = []
            for entry in self._entries.values():
                if entry.id in in_flight or entry.status in IN_USE_STATUSES:
                    continue
                partial = self._partial_path(entry.id)
                entry.bytes_done = partial.stat().st_size if partial.is_file() else 0
                if self._is_installed(entry):
                    updates.append((entry.id, ModelStatus.PRESENT))
                else:
                    updates.append((entry.id, ModelStatus.NOT_PRESENT))

        for model_id, status in updates:
            self.set_status(model_id, status)

    def download(self, model_id: str) -> DownloadTask:
        """
        Start downloading a model, or join the download already running.

        Raises:
            ModelNotLoadedError: Unknown model id.
            DownloadFailedError: The cache root cannot be created.
        """
        with self._lock:
            entry = self._require(model_id)
            existing = self._downloads.get(model_id)
            if existing is not None:
                return existing

            task = DownloadTask(model_id)
            if entry.status in ON_DISK_STATUSES:
                logger.info(f"Model {model_id} is already downloaded")
                task._finish()
                return task

            try:
                self.cache_root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                error = DownloadFailedError(
                    f"Cache directory {self.cache_root} is not writable: {e}",
                    model_id=model_id,
                    retryable=False,
                )
                self._event_bus.emit(error.to_event())
                raise error from e

            self._downloads[model_id] = task

        self.set_status(model_id, ModelStatus.DOWNLOADING)
        thread = threading.Thread(
            target=self._run_download,
            args=(entry, task),
            name=f"murmur-download-{model_id}",
            daemon=True,
        )
        thread.start()
        return task

    def cancel_download(self, model_id: str) -> bool:
        with self._lock:
            task = self._downloads.get(model_id)
        if task is None:
            return False
        task.cancel()
        return True

    def evict(self, model_id: str) -> None:
        """
        Delete a cached model.

        Raises:
            ModelInUseError: The model is loaded or being (un)loaded.
        """
        with self._lock:
            entry = self._require(model_id)
            self._check_not_in_use(entry)
            task = self._downloads.get(model_id)

        if task is not None:
            task.cancel()
            task.wait()

        with self._lock:
            self._check_not_in_use(entry)
            for path in (
                entry.path,
                self._partial_path(model_id),
                self._staging_path(model_id),
            ):
                remove_path(path)
            entry.bytes_done = 0
            entry.bytes_total = 0

        logger.info(f"Evicted model {model_id}")
        self.set_status(model_id, ModelStatus.NOT_PRESENT)

    def _check_not_in_use(self, entry: ModelEntry) -> None:
        if entry.status in IN_USE_STATUSES:
            raise ModelInUseError(
                f"Model '{entry.id}' is {entry.status.value}; unload it first",
                model_id=entry.id,
            )

    def _run_download(self, entry: ModelEntry, task: DownloadTask) -> None:
        model_id = entry.id
        partial = self._partial_path(model_id)
        error: Optional[MurmurError] = None

        try:
            self._fetch_with_retry(entry, task, partial)
            self.set_status(model_id, ModelStatus.VERIFYING)
            self._verify(entry, task, partial)
            self._install(entry, partial)
            logger.info(f"Model {model_id} downloaded successfully")
            self.set_status(model_id, ModelStatus.PRESENT)
        except DownloadCancelledError as e:
            error = e
            logger.info(f"Download of {model_id} cancelled")
            for path in (partial, self._staging_path(model_id)):
                try:
                    remove_path(path)
                except OSError as cleanup_error:
                    logger.warning(f"Could not remove {path}: {cleanup_error}")
            with self._lock:
                entry.bytes_done = 0
            self.set_status(model_id, ModelStatus.NOT_PRESENT)
        except DownloadFailedError as e:
            error = e
            logger.error(f"Download of {model_id} failed: {e}")
            self.set_status(model_id, ModelStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error downloading {model_id}: {e}")
            error = DownloadFailedError(str(e), model_id=model_id)
            self.set_status(model_id, ModelStatus.FAILED, error=str(e))
        finally:
            with self._lock:
                self._downloads.pop(model_id, None)
            if error is not None:
                self._event_bus.emit(error.to_event())
            task._finish(error)

    def _fetch_with_retry(self, entry: ModelEntry, task: DownloadTask, partial: Path) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._fetch(entry, task, partial)
                return
            except requests.RequestException as e:
                if attempt == self.max_attempts:
                    raise DownloadFailedError(
                        f"Download failed after {attempt} attempts: {e}",
                        model_id=entry.id,
                    ) from e
                delay = min(self.backoff_cap, self.backoff_base * 2 ** (attempt - 1))
                logger.warning(
                    f"Download of {entry.id} interrupted ({e}); "
                    f"retrying in {delay:.1f}s ({attempt}/{self.max_attempts})"
                )
                if task._cancel_event.wait(delay):
                    raise DownloadCancelledError("Download cancelled", model_id=entry.id)
            except OSError as e:
                raise DownloadFailedError(
                    f"Could not write {partial}: {e}", model_id=entry.id, retryable=False
                ) from e

    def _fetch(self, entry: ModelEntry, task: DownloadTask, partial: Path) -> None:
        offset = partial.stat().st_size if partial.is_file() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        if offset:
            logger.info(f"Resuming {entry.id} from byte {offset}")
        else:
            logger.info(f"Downloading model from {entry.info.url}")

        with self._session.get(
            entry.info.url, stream=True, timeout=30, headers=headers
        ) as response:
            if offset and response.status_code == 416:
                # Range starts at the end: the partial is already complete
                total = entry.info.size_bytes or offset
                self._progress(entry, task, offset, total)
                return

            response.raise_for_status()
            if offset and response.status_code != 206:
                logger.info("Server ignored the range request; restarting download")
                offset = 0

            length = int(response.headers.get("content-length", 0) or 0)
            total = offset + length if length else (entry.info.size_bytes or 0)
            done = offset

            with open(partial, "ab" if offset else "wb") as f:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    if task.cancelled:
                        raise DownloadCancelledError("Download cancelled", model_id=entry.id)
                    if not chunk:
                        continue
                    f.write(chunk)
                    done += len(chunk)
                    self._progress(entry, task, done, total)

        if task.cancelled:
            raise DownloadCancelledError("Download cancelled", model_id=entry.id)
        if total and done < total:
            raise requests.ConnectionError(
                f"Connection closed after {done} of {total} bytes"
            )

    def _progress(self, entry: ModelEntry, task: DownloadTask, done: int, total: int) -> None:
        task.bytes_done = done
        task.bytes_total = total
        with self._lock:
            entry.bytes_done = done
            entry.bytes_total = total
        self._event_bus.emit(
            DownloadProgress(model_id=entry.id, bytes_done=done, bytes_total=total)
        )

    def _verify(self, entry: ModelEntry, task: DownloadTask, partial: Path) -> None:
        size = partial.stat().st_size
        expected = entry.info.size_bytes or task.bytes_total
        if expected and size != expected:
            remove_path(partial)
            raise DownloadFailedError(
                f"Size mismatch: got {size} bytes, expected {expected}",
                model_id=entry.id,
            )

        if entry.info.sha256:
            digest = hashlib.sha256()
            with open(partial, "rb") as f:
                for block in iter(lambda: f.read(1024 * 1024), b""):
                    digest.update(block)
            if digest.hexdigest().lower() != entry.info.sha256.lower():
                remove_path(partial)
                raise DownloadFailedError("Checksum mismatch", model_id=entry.id)

    def _install(self, entry: ModelEntry, partial: Path) -> None:
        staging = self._staging_path(entry.id)
        try:
            remove_path(staging)
            staging.mkdir(parents=True)

            if entry.info.archive:
                logger.info(f"Extracting {entry.info.filename}")
                with tarfile.open(partial, "r:*") as tar:
                    tar.extractall(staging, filter="data")
                children = list(staging.iterdir())
                source = children[0] if len(children) == 1 and children[0].is_dir() else staging
            else:
                shutil.move(str(partial), str(staging / entry.info.filename))
                source = staging

            remove_path(entry.path)
            os.replace(source, entry.path)
            remove_path(staging)
            remove_path(partial)
        except (tarfile.TarError, OSError) as e:
            remove_path(staging)
            remove_path(partial)
            raise DownloadFailedError(f"Failed to install model: {e}", model_id=entry.id) from e

        if not self._is_installed(entry):
            remove_path(entry.path)
            raise DownloadFailedError(
                "Downloaded model is missing required files", model_id=entry.id
            )
