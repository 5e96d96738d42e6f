import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ....utils.logger import get_logger

logger = get_logger(__name__)

CATALOG_PATH = Path(__file__).parent / "models.json"

MODEL_TYPES = ("whisper", "transducer")


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    type: str
    url: str
    filename: str
    description: str = ""
    size_bytes: Optional[int] = None
    sha256: Optional[str] = None
    archive: bool = True
    accuracy_score: float = 0.0
    speed_score: float = 0.0

    def __post_init__(self):
        if self.type not in MODEL_TYPES:
            raise ValueError(
                f"Model '{self.id}' has type '{self.type}', expected one of {MODEL_TYPES}"
            )


def load_catalog(path: Optional[Path] = None) -> List[ModelInfo]:
    path = Path(path) if path else CATALOG_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error loading model catalog {path}: {e}")
        return []

    models = []
    for item in data:
        try:
            models.append(ModelInfo(**item))
        except (TypeError, ValueError) as e:
            logger.error(f"Skipping malformed catalog entry {item.get('id')!r}: {e}")
    return models


AVAILABLE_MODELS: List[ModelInfo] = load_catalog()


def get_model_by_id(model_id: str) -> Optional[ModelInfo]:
    for model in AVAILABLE_MODELS:
        if model.id == model_id:
            return model
    return None
