"""Error taxonomy shared by every manager in the core."""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    DEVICE_UNAVAILABLE = "device_unavailable"
    DEVICE_LOST = "device_lost"
    MODEL_NOT_LOADED = "model_not_loaded"
    MODEL_LOAD_FAILED = "model_load_failed"
    MODEL_IN_USE = "model_in_use"
    DOWNLOAD_FAILED = "download_failed"
    DOWNLOAD_CANCELLED = "download_cancelled"
    PROVIDER_UNAUTHENTICATED = "provider_unauthenticated"
    PROVIDER_REQUEST_FAILED = "provider_request_failed"
    INFERENCE_FAILED = "inference_failed"
    INVALID_AUDIO_INPUT = "invalid_audio_input"
    AUDIO_PIPELINE_FAILED = "audio_pipeline_failed"


class MurmurError(Exception):
    """
    Base class for recoverable pipeline errors.

    Carries enough context (model id, session id) for the UI to react.
    """

    code: ErrorCode = ErrorCode.INFERENCE_FAILED
    retryable: bool = False

    def __init__(
        self,
        message: str,
        model_id: Optional[str] = None,
        session_id: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.model_id = model_id
        self.session_id = session_id
        if retryable is not None:
            self.retryable = retryable

    def to_event(self):
        from .events import ErrorEvent

        return ErrorEvent(
            code=self.code,
            message=self.message,
            model_id=self.model_id,
            session_id=self.session_id,
        )


class DeviceUnavailableError(MurmurError):
    code = ErrorCode.DEVICE_UNAVAILABLE
    retryable = True


class DeviceLostError(MurmurError):
    code = ErrorCode.DEVICE_LOST


class ModelNotLoadedError(MurmurError):
    code = ErrorCode.MODEL_NOT_LOADED


class ModelLoadFailedError(MurmurError):
    code = ErrorCode.MODEL_LOAD_FAILED


class ModelInUseError(MurmurError):
    code = ErrorCode.MODEL_IN_USE


class DownloadFailedError(MurmurError):
    code = ErrorCode.DOWNLOAD_FAILED
    retryable = True


class DownloadCancelledError(MurmurError):
    code = ErrorCode.DOWNLOAD_CANCELLED


class ProviderUnauthenticatedError(MurmurError):
    code = ErrorCode.PROVIDER_UNAUTHENTICATED


class ProviderRequestFailedError(MurmurError):
    code = ErrorCode.PROVIDER_REQUEST_FAILED


class InferenceFailedError(MurmurError):
    code = ErrorCode.INFERENCE_FAILED


class InvalidAudioInputError(MurmurError):
    code = ErrorCode.INVALID_AUDIO_INPUT


class AudioPipelineError(MurmurError):
    code = ErrorCode.AUDIO_PIPELINE_FAILED
