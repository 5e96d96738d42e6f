from .backends import Engine, SherpaOnnxBackend, TranscriptionResult
from .manager import ModelManager
from .models import AVAILABLE_MODELS, ModelInfo, get_model_by_id
from .store import DownloadTask, ModelEntry, ModelStatus, ModelStore

__all__ = [
    "Engine",
    "SherpaOnnxBackend",
    "TranscriptionResult",
    "ModelManager",
    "ModelInfo",
    "AVAILABLE_MODELS",
    "get_model_by_id",
    "DownloadTask",
    "ModelEntry",
    "ModelStatus",
    "ModelStore",
]
