"""
Tests for the local model cache.

Downloads are served by an in-memory session that honours Range headers
and can drop the connection part way through.
"""

import hashlib
import threading

import pytest

from murmur.core.asr.file_utils import is_valid_model_dir
from murmur.core.asr.store import ModelStatus, ModelStore
from murmur.core.errors import (
    DownloadCancelledError,
    DownloadFailedError,
    ErrorCode,
    ModelInUseError,
    ModelNotLoadedError,
)
from murmur.core.events import DownloadProgress, ErrorEvent, ModelStatusChanged

from conftest import (
    FakeDownloadSession,
    build_archive,
    install_model,
    make_model_info,
    whisper_files,
)


@pytest.fixture
def make_store(cache_dir, event_bus, catalog):
    def make(session, catalog=catalog, **kwargs):
        kwargs.setdefault("backoff_base", 0)
        kwargs.setdefault("chunk_size", 64)
        return ModelStore(cache_dir, event_bus, catalog=catalog, session=session, **kwargs)

    return make


def statuses(recorder, model_id):
    return [e.status for e in recorder.of_type(ModelStatusChanged) if e.model_id == model_id]


class TestRefresh:
    def test_detects_installed_models(self, make_store, cache_dir):
        install_model(cache_dir, "test-whisper")

        store = make_store(FakeDownloadSession(b""))

        assert store.status("test-whisper") == ModelStatus.PRESENT
        assert store.status("other-whisper") == ModelStatus.NOT_PRESENT
        assert [e.id for e in store.present_models()] == ["test-whisper"]

    def test_incomplete_directory_is_not_present(self, make_store, cache_dir):
        model_dir = cache_dir / "test-whisper"
        model_dir.mkdir(parents=True)
        (model_dir / "tiny-encoder.onnx").write_bytes(b"x")

        store = make_store(FakeDownloadSession(b""))

        assert store.status("test-whisper") == ModelStatus.NOT_PRESENT

    def test_removes_interrupted_extraction(self, make_store, cache_dir):
        staging = cache_dir / "test-whisper.extracting"
        staging.mkdir(parents=True)
        (staging / "tiny-encoder.onnx").write_bytes(b"x")

        make_store(FakeDownloadSession(b""))

        assert not staging.exists()

    def test_missing_cache_root(self, make_store, cache_dir):
        store = make_store(FakeDownloadSession(b""))
        assert not cache_dir.exists()
        assert store.status("test-whisper") == ModelStatus.NOT_PRESENT


class TestDownload:
    def test_download_installs_model(self, make_store, cache_dir, archive, recorder):
        session = FakeDownloadSession(archive)
        store = make_store(session)

        task = store.download("test-whisper")

        assert task.wait(5)
        assert task.succeeded
        assert store.status("test-whisper") == ModelStatus.PRESENT
        assert is_valid_model_dir(cache_dir / "test-whisper", "whisper")
        assert not (cache_dir / "test-whisper.partial").exists()
        assert not (cache_dir / "test-whisper.extracting").exists()
        assert statuses(recorder, "test-whisper") == ["downloading", "verifying", "present"]

    def test_progress_is_reported(self, make_store, archive, recorder):
        store = make_store(FakeDownloadSession(archive))

        store.download("test-whisper").wait(5)

        progress = [e for e in recorder.of_type(DownloadProgress) if e.model_id == "test-whisper"]
        done = [e.bytes_done for e in progress]
        assert done == sorted(done)
        assert progress[-1].bytes_done == len(archive)
        assert progress[-1].bytes_total == len(archive)
        assert progress[-1].percentage == pytest.approx(100.0)

    def test_resumes_after_dropped_connection(self, make_store, archive):
        """The second request asks only for the bytes that are missing."""
        session = FakeDownloadSession(archive, interruptions=[40])
        store = make_store(session)

        task = store.download("test-whisper")

        assert task.wait(5)
        assert task.succeeded
        assert len(session.requests) == 2
        assert "Range" not in session.requests[0]
        assert session.requests[1]["Range"] == "bytes=64-"

    def test_restarts_when_range_is_ignored(self, make_store, archive):
        session = FakeDownloadSession(archive, interruptions=[100], ignore_range=True)
        store = make_store(session)

        task = store.download("test-whisper")

        assert task.wait(5)
        assert task.succeeded
        assert store.status("test-whisper") == ModelStatus.PRESENT

    def test_gives_up_after_max_attempts(self, make_store, archive, recorder):
        session = FakeDownloadSession(archive, interruptions=[0, 0, 0])
        store = make_store(session, max_attempts=3)

        task = store.download("test-whisper")

        assert task.wait(5)
        assert isinstance(task.error, DownloadFailedError)
        assert len(session.requests) == 3
        assert store.status("test-whisper") == ModelStatus.FAILED
        assert store.get("test-whisper").error
        errors = recorder.of_type(ErrorEvent)
        assert [e.code for e in errors] == [ErrorCode.DOWNLOAD_FAILED]
        assert errors[0].model_id == "test-whisper"

    def test_http_error_fails(self, make_store, archive):
        store = make_store(FakeDownloadSession(archive, status_code=404), max_attempts=2)

        task = store.download("test-whisper")

        assert task.wait(5)
        assert isinstance(task.error, DownloadFailedError)
        assert store.status("test-whisper") == ModelStatus.FAILED

    def test_checksum_mismatch(self, make_store, cache_dir, archive):
        catalog = [make_model_info("test-whisper", sha256="0" * 64)]
        store = make_store(FakeDownloadSession(archive), catalog=catalog)

        task = store.download("test-whisper")

        assert task.wait(5)
        assert "Checksum" in str(task.error)
        assert store.status("test-whisper") == ModelStatus.FAILED
        assert not (cache_dir / "test-whisper.partial").exists()
        assert not (cache_dir / "test-whisper").exists()

    def test_checksum_match(self, make_store, archive):
        digest = hashlib.sha256(archive).hexdigest()
        catalog = [make_model_info("test-whisper", sha256=digest, size_bytes=len(archive))]
        store = make_store(FakeDownloadSession(archive), catalog=catalog)

        assert store.download("test-whisper").wait(5)
        assert store.status("test-whisper") == ModelStatus.PRESENT

    def test_size_mismatch(self, make_store, archive):
        catalog = [make_model_info("test-whisper", size_bytes=len(archive) + 10)]
        store = make_store(FakeDownloadSession(archive), catalog=catalog, max_attempts=1)

        task = store.download("test-whisper")

        assert task.wait(5)
        assert isinstance(task.error, DownloadFailedError)
        assert store.status("test-whisper") == ModelStatus.FAILED

    def test_corrupt_archive(self, make_store, cache_dir):
        store = make_store(FakeDownloadSession(b"this is not a tarball" * 10))

        task = store.download("test-whisper")

        assert task.wait(5)
        assert isinstance(task.error, DownloadFailedError)
        assert not (cache_dir / "test-whisper").exists()
        assert not (cache_dir / "test-whisper.extracting").exists()

    def test_archive_escaping_cache_is_rejected(self, make_store, cache_dir):
        payload = build_archive("../escaped", whisper_files())
        store = make_store(FakeDownloadSession(payload))

        task = store.download("test-whisper")

        assert task.wait(5)
        assert isinstance(task.error, DownloadFailedError)
        assert not (cache_dir / "escaped").exists()
        assert not (cache_dir / "test-whisper").exists()

    def test_archive_without_model_files(self, make_store, cache_dir):
        payload = build_archive("test-whisper", {"README.md": b"nothing here"})
        store = make_store(FakeDownloadSession(payload))

        task = store.download("test-whisper")

        assert task.wait(5)
        assert "missing required files" in str(task.error)
        assert not (cache_dir / "test-whisper").exists()

    def test_single_file_model(self, make_store, cache_dir):
        catalog = [make_model_info("test-whisper", archive=False, filename="model.bin")]
        store = make_store(FakeDownloadSession(b"weights" * 100), catalog=catalog)

        assert store.download("test-whisper").wait(5)
        assert (cache_dir / "test-whisper" / "model.bin").read_bytes() == b"weights" * 100
        assert store.status("test-whisper") == ModelStatus.PRESENT

    def test_already_present_is_not_downloaded(self, make_store, cache_dir):
        install_model(cache_dir, "test-whisper")
        session = FakeDownloadSession(b"")
        store = make_store(session)

        task = store.download("test-whisper")

        assert task.done and task.succeeded
        assert session.requests == []

    def test_concurrent_downloads_share_one_transfer(self, make_store, archive):
        gate = threading.Event()
        session = FakeDownloadSession(archive, gate=gate)
        store = make_store(session)

        first = store.download("test-whisper")
        second = store.download("test-whisper")
        gate.set()

        assert first is second
        assert first.wait(5)
        assert len(session.requests) == 1

    def test_unknown_model(self, make_store):
        store = make_store(FakeDownloadSession(b""))
        with pytest.raises(ModelNotLoadedError):
            store.download("no-such-model")

    def test_unwritable_cache_root(self, tmp_path, event_bus, catalog, recorder):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file")
        store = ModelStore(blocker, event_bus, catalog=catalog, session=FakeDownloadSession(b""))

        with pytest.raises(DownloadFailedError) as exc:
            store.download("test-whisper")

        assert exc.value.retryable is False
        assert [e.code for e in recorder.of_type(ErrorEvent)] == [ErrorCode.DOWNLOAD_FAILED]


class TestCancel:
    def test_cancel_removes_partial_file(self, make_store, cache_dir, archive, recorder):
        gate = threading.Event()
        store = make_store(FakeDownloadSession(archive, gate=gate))

        task = store.download("test-whisper")
        assert store.cancel_download("test-whisper")
        gate.set()

        assert task.wait(5)
        assert isinstance(task.error, DownloadCancelledError)
        assert task.cancelled
        assert store.status("test-whisper") == ModelStatus.NOT_PRESENT
        assert list(cache_dir.iterdir()) == []
        assert ErrorCode.DOWNLOAD_CANCELLED in [e.code for e in recorder.of_type(ErrorEvent)]

    def test_cancel_without_download(self, make_store):
        store = make_store(FakeDownloadSession(b""))
        assert store.cancel_download("test-whisper") is False

    def test_download_again_after_cancel(self, make_store, archive):
        gate = threading.Event()
        session = FakeDownloadSession(archive, gate=gate)
        store = make_store(session)
        task = store.download("test-whisper")
        store.cancel_download("test-whisper")
        gate.set()
        task.wait(5)

        retry = store.download("test-whisper")

        assert retry is not task
        assert retry.wait(5)
        assert retry.succeeded


class TestEvict:
    def test_evict_removes_files(self, make_store, cache_dir, recorder):
        install_model(cache_dir, "test-whisper")
        store = make_store(FakeDownloadSession(b""))

        store.evict("test-whisper")

        assert not (cache_dir / "test-whisper").exists()
        assert store.status("test-whisper") == ModelStatus.NOT_PRESENT
        assert statuses(recorder, "test-whisper")[-1] == "not_present"

    @pytest.mark.parametrize(
        "status", [ModelStatus.LOADING, ModelStatus.LOADED, ModelStatus.UNLOADING]
    )
    def test_evict_in_use_model(self, make_store, cache_dir, status):
        install_model(cache_dir, "test-whisper")
        store = make_store(FakeDownloadSession(b""))
        store.set_status("test-whisper", status)

        with pytest.raises(ModelInUseError):
            store.evict("test-whisper")
        assert (cache_dir / "test-whisper").exists()

    def test_evict_cancels_running_download(self, make_store, cache_dir, archive):
        gate = threading.Event()
        store = make_store(FakeDownloadSession(archive, gate=gate))
        task = store.download("test-whisper")

        threading.Timer(0.05, gate.set).start()
        store.evict("test-whisper")

        assert task.done
        assert store.status("test-whisper") == ModelStatus.NOT_PRESENT
        assert list(cache_dir.iterdir()) == []


class TestModelPath:
    def test_present_model(self, make_store, cache_dir):
        model_dir = install_model(cache_dir, "test-whisper")
        store = make_store(FakeDownloadSession(b""))
        assert store.model_path("test-whisper") == model_dir

    def test_missing_model(self, make_store):
        store = make_store(FakeDownloadSession(b""))
        with pytest.raises(ModelNotLoadedError):
            store.model_path("test-whisper")
