import os
from typing import Optional

import litellm
from litellm import completion

from ...utils.logger import get_logger

logger = get_logger(__name__)

TRANSLATION_PROMPT = (
    "Translate the user's dictated text into English. Keep names, numbers and "
    "formatting. Reply with the translation only, without quotes or commentary."
)

API_KEY_ENV_VARS = [
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "AZURE_API_KEY",
    "GEMINI_API_KEY",
    "OPENROUTER_API_KEY",
]


def is_english(language: Optional[str]) -> bool:
    return bool(language) and language.lower().split("-")[0].split("_")[0] == "en"


class TranscriptTranslator:
    """Translates transcripts to English through any litellm-supported model."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base

        model_info = litellm.model_cost.get(model, {})
        self._supports_system_messages = model_info.get("supports_system_messages", True)

    @classmethod
    def from_settings(cls, settings) -> "TranscriptTranslator":
        return cls(
            model=settings.translation_model,
            api_key=settings.translation_api_key,
            api_base=settings.translation_api_base,
        )

    def is_configured(self) -> bool:
        if self.api_key:
            return True
        if self.model.startswith("ollama/"):
            return True
        return any(os.environ.get(var) for var in API_KEY_ENV_VARS)

    def translate(self, text: str, source_language: Optional[str] = None) -> str:
        """English translation of ``text``; the input is returned on failure."""
        if not text or not text.strip():
            return text
        if is_english(source_language):
            return text
        if not self.is_configured():
            logger.warning("Translation requested but no LLM credentials are configured")
            return text

        if self._supports_system_messages:
            messages = [
                {"role": "system", "content": TRANSLATION_PROMPT},
                {"role": "user", "content": text},
            ]
        else:
            messages = [{"role": "user", "content": f"{TRANSLATION_PROMPT}\n\n{text}"}]

        kwargs = {"model": self.model, "messages": messages}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = completion(**kwargs)
            translated = response.choices[0].message.content
        except Exception as e:
            logger.error(f"Translation failed: {e}", exc_info=True)
            return text

        if not translated or not translated.strip():
            return text
        logger.info(f"Translated transcript: {len(text)} -> {len(translated)} chars")
        return translated.strip()
