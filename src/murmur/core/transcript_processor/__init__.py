from .translator import TranscriptTranslator, is_english
from .vocabulary_processor import apply_custom_words, soundex

__all__ = [
    "TranscriptTranslator",
    "is_english",
    "apply_custom_words",
    "soundex",
]
