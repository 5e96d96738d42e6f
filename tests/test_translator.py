"""Tests for LLM translation of transcripts; litellm is mocked."""

from unittest.mock import MagicMock, patch

import pytest

from murmur.core.settings import Settings
from murmur.core.transcript_processor.translator import (
    API_KEY_ENV_VARS,
    TRANSLATION_PROMPT,
    TranscriptTranslator,
    is_english,
)


def completion_response(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


@pytest.fixture
def no_llm_env(monkeypatch):
    for var in API_KEY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.mark.parametrize(
    "language, expected",
    [("en", True), ("en-GB", True), ("EN_us", True), ("de", False), ("auto", False), (None, False)],
)
def test_is_english(language, expected):
    assert is_english(language) is expected


class TestTranscriptTranslator:
    @patch("murmur.core.transcript_processor.translator.completion")
    def test_translates(self, mock_completion):
        mock_completion.return_value = completion_response(" Good morning ")
        translator = TranscriptTranslator(model="gpt-4o-mini", api_key="sk-test")

        assert translator.translate("Guten Morgen", "de") == "Good morning"

        kwargs = mock_completion.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["messages"][0] == {"role": "system", "content": TRANSLATION_PROMPT}
        assert kwargs["messages"][1] == {"role": "user", "content": "Guten Morgen"}

    @patch("murmur.core.transcript_processor.translator.completion")
    def test_english_is_left_alone(self, mock_completion):
        translator = TranscriptTranslator(api_key="sk-test")

        assert translator.translate("Good morning", "en") == "Good morning"
        mock_completion.assert_not_called()

    @patch("murmur.core.transcript_processor.translator.completion")
    def test_failure_returns_original(self, mock_completion):
        mock_completion.side_effect = RuntimeError("rate limited")
        translator = TranscriptTranslator(api_key="sk-test")

        assert translator.translate("Bonjour", "fr") == "Bonjour"

    @patch("murmur.core.transcript_processor.translator.completion")
    def test_empty_reply_returns_original(self, mock_completion):
        mock_completion.return_value = completion_response("   ")
        translator = TranscriptTranslator(api_key="sk-test")

        assert translator.translate("Hola", "es") == "Hola"

    @patch("murmur.core.transcript_processor.translator.completion")
    def test_not_configured(self, mock_completion, no_llm_env):
        translator = TranscriptTranslator(model="gpt-4o-mini")

        assert not translator.is_configured()
        assert translator.translate("Hola", "es") == "Hola"
        mock_completion.assert_not_called()

    def test_env_key_configures(self, no_llm_env, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert TranscriptTranslator().is_configured()

    def test_ollama_needs_no_key(self, no_llm_env):
        assert TranscriptTranslator(model="ollama/llama3").is_configured()

    @patch("murmur.core.transcript_processor.translator.completion")
    def test_api_base_is_passed(self, mock_completion):
        mock_completion.return_value = completion_response("Hi")
        translator = TranscriptTranslator(
            model="ollama/llama3", api_base="http://localhost:11434"
        )

        translator.translate("Hallo", "auto")

        assert mock_completion.call_args.kwargs["api_base"] == "http://localhost:11434"
        assert "api_key" not in mock_completion.call_args.kwargs

    def test_from_settings(self):
        settings = Settings(
            translation_model="claude-3-haiku-20240307",
            translation_api_key="key",
            translation_api_base="https://proxy.example",
        )

        translator = TranscriptTranslator.from_settings(settings)

        assert translator.model == "claude-3-haiku-20240307"
        assert translator.api_key == "key"
        assert translator.api_base == "https://proxy.example"

    def test_blank_text(self):
        assert TranscriptTranslator(api_key="k").translate("  ", "de") == "  "
