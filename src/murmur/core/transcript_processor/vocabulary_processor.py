"""Custom-word correction of raw transcripts."""

from difflib import SequenceMatcher
from typing import List, Optional, Sequence

from ...utils.logger import get_logger

logger = get_logger(__name__)

MAX_WORD_LENGTH = 50
MAX_LENGTH_DIFFERENCE = 5
PHONETIC_BOOST = 0.3

_SOUNDEX_CODES = {
    **dict.fromkeys("bfpv", "1"),
    **dict.fromkeys("cgjkqsxz", "2"),
    **dict.fromkeys("dt", "3"),
    "l": "4",
    **dict.fromkeys("mn", "5"),
    "r": "6",
}


def soundex(word: str) -> str:
    letters = [c for c in word.lower() if c.isalpha()]
    if not letters:
        return ""

    code = letters[0].upper()
    previous = _SOUNDEX_CODES.get(letters[0], "")
    for c in letters[1:]:
        digit = _SOUNDEX_CODES.get(c, "")
        if digit and digit != previous:
            code += digit
            if len(code) == 4:
                break
        # h and w do not separate letters with the same code
        if c not in "hw":
            previous = digit
    return code.ljust(4, "0")


def _match_case(original: str, replacement: str) -> str:
    letters = [c for c in original if c.isalpha()]
    if letters and all(c.isupper() for c in letters) and len(letters) > 1:
        return replacement.upper()
    if letters and letters[0].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def _split_punctuation(word: str):
    start = 0
    while start < len(word) and not word[start].isalpha():
        start += 1
    end = len(word)
    while end > start and not word[end - 1].isalpha():
        end -= 1
    return word[:start], word[start:end], word[end:]


def _best_match(
    cleaned: str, custom_words: Sequence[str], lowered: Sequence[str], max_distance: float
) -> Optional[str]:
    best = None
    best_score = float("inf")
    cleaned_code = soundex(cleaned)

    for original, candidate in zip(custom_words, lowered):
        if abs(len(cleaned) - len(candidate)) > MAX_LENGTH_DIFFERENCE:
            continue

        distance = 1.0 - SequenceMatcher(None, cleaned, candidate).ratio()
        if cleaned_code and cleaned_code == soundex(candidate):
            distance *= PHONETIC_BOOST

        if distance <= max_distance and distance < best_score:
            best = original
            best_score = distance

    return best


def apply_custom_words(text: str, custom_words: List[str], threshold: float = 0.82) -> str:
    """
    Replace words that closely resemble a custom word with that word.

    Similarity combines difflib's ratio with a Soundex match, which cuts
    the remaining distance to 30%. A word is replaced when the combined
    similarity reaches ``threshold``. Case pattern and surrounding
    punctuation of the original word are kept.
    """
    if not custom_words or not text:
        return text

    lowered = [w.lower() for w in custom_words]
    max_distance = 1.0 - threshold
    corrected = []

    for word in text.split():
        prefix, core, suffix = _split_punctuation(word)
        cleaned = core.lower()
        if not cleaned or len(cleaned) > MAX_WORD_LENGTH:
            corrected.append(word)
            continue

        replacement = _best_match(cleaned, custom_words, lowered, max_distance)
        if replacement is None:
            corrected.append(word)
        else:
            corrected.append(f"{prefix}{_match_case(core, replacement)}{suffix}")

    result = " ".join(corrected)
    if result != text:
        logger.debug(f"Applied custom words: '{text[:50]}' -> '{result[:50]}'")
    return result
