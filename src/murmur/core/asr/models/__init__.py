from .registry import AVAILABLE_MODELS, ModelInfo, get_model_by_id, load_catalog

__all__ = [
    "ModelInfo",
    "AVAILABLE_MODELS",
    "get_model_by_id",
    "load_catalog",
]
