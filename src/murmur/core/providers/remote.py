import time
from typing import Any, Callable, Dict, Optional

import numpy as np
import requests

from ...utils.logger import get_logger
from ..errors import ProviderRequestFailedError, ProviderUnauthenticatedError
from .base import ProviderKind, encode_wav

logger = get_logger(__name__)

REQUEST_TIMEOUT_SECONDS = 60
POLL_TIMEOUT_SECONDS = 300

SUPPORTED_LANGUAGES = frozenset(
    "en es fr de it pt nl hi ja ko pl ru tr vi uk zh ar ca cs da fi el he hu id "
    "ms no ro sk sv th ur fa bg hr et lv lt mk sl sr az bn kn ml ta te cy".split()
)


def convert_language(language: Optional[str], english_code: str = "en") -> str:
    """Map an app language setting to a provider code; unknown codes fall back to English."""
    if not language or language == "auto":
        return "auto"
    code = language.lower().split("-")[0].split("_")[0]
    if code == "en":
        return english_code
    return code if code in SUPPORTED_LANGUAGES else english_code


class RemoteProvider:
    """Shared request plumbing for hosted speech-to-text APIs."""

    kind: ProviderKind
    name = "remote"

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        if not api_key:
            raise ProviderUnauthenticatedError(f"{self.name} API key not set")
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        logger.debug(f"[{self.name}] {method} {url}")
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProviderRequestFailedError(f"{self.name} request failed: {e}") from e

        if response.status_code in (401, 403):
            raise ProviderUnauthenticatedError(
                f"{self.name} rejected the API key (status {response.status_code})"
            )
        if not response.ok:
            raise ProviderRequestFailedError(
                f"{self.name} request failed with status {response.status_code}: "
                f"{response.text}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderRequestFailedError(
                f"Failed to parse {self.name} response: {e}"
            ) from e

    def _require_field(self, result: Dict[str, Any], key: str) -> Any:
        value = result.get(key)
        if not value:
            raise ProviderRequestFailedError(f"{self.name} response is missing '{key}'")
        return value

    def transcribe(self, audio: np.ndarray, language: str = "auto") -> str:
        wav_data = encode_wav(audio)
        logger.info(f"[{self.name}] Sending {len(wav_data)} bytes of WAV audio")
        text = self._transcribe_wav(wav_data, language)
        logger.info(f"[{self.name}] Transcription successful ({len(text)} chars)")
        return text

    def _transcribe_wav(self, wav_data: bytes, language: str) -> str:
        raise NotImplementedError


class MistralProvider(RemoteProvider):
    kind = ProviderKind.MISTRAL
    name = "Mistral"
    URL = "https://api.mistral.ai/v1/audio/transcriptions"
    MODEL = "voxtral-mini-latest"

    def _transcribe_wav(self, wav_data: bytes, language: str) -> str:
        data = {"model": self.MODEL}
        code = convert_language(language)
        if code != "auto":
            data["language"] = code

        result = self._request(
            "POST",
            self.URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            files={"file": ("audio.wav", wav_data, "audio/wav")},
            data=data,
        )
        return result.get("text") or ""


class DeepgramProvider(RemoteProvider):
    kind = ProviderKind.DEEPGRAM
    name = "Deepgram"
    URL = "https://api.deepgram.com/v1/listen"
    MODEL = "nova-3"

    def _transcribe_wav(self, wav_data: bytes, language: str) -> str:
        code = convert_language(language)
        result = self._request(
            "POST",
            self.URL,
            params={
                "model": self.MODEL,
                "smart_format": "true",
                "language": "multi" if code == "auto" else code,
            },
            headers={
                "Authorization": f"Token {self.api_key}",
                "Content-Type": "audio/wav",
            },
            data=wav_data,
        )

        channels = (result.get("results") or {}).get("channels") or []
        if not channels:
            return ""
        alternatives = channels[0].get("alternatives") or []
        if not alternatives:
            return ""
        return alternatives[0].get("transcript") or ""


class _PollingProvider(RemoteProvider):
    """Upload, submit a job, then poll until it finishes."""

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        poll_interval: float = 2.0,
        poll_timeout: float = POLL_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(api_key, session=session, timeout=timeout)
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._sleep = sleep

    def _poll(self, url: str, headers: Dict[str, str]) -> Dict[str, Any]:
        deadline = time.monotonic() + self.poll_timeout
        while True:
            result = self._request("GET", url, headers=headers)
            if self._is_finished(result):
                return result
            if time.monotonic() >= deadline:
                raise ProviderRequestFailedError(
                    f"{self.name} transcription did not finish within {self.poll_timeout:.0f}s"
                )
            logger.debug(f"[{self.name}] Transcription not ready, waiting...")
            self._sleep(self.poll_interval)

    def _is_finished(self, result: Dict[str, Any]) -> bool:
        raise NotImplementedError


class AssemblyAIProvider(_PollingProvider):
    kind = ProviderKind.ASSEMBLYAI
    name = "AssemblyAI"
    BASE_URL = "https://api.assemblyai.com/v2"

    def __init__(self, api_key: str, poll_interval: float = 3.0, **kwargs):
        super().__init__(api_key, poll_interval=poll_interval, **kwargs)

    def _transcribe_wav(self, wav_data: bytes, language: str) -> str:
        headers = {"authorization": self.api_key}

        upload = self._request(
            "POST",
            f"{self.BASE_URL}/upload",
            headers={**headers, "Content-Type": "application/octet-stream"},
            data=wav_data,
        )

        payload: Dict[str, Any] = {
            "audio_url": self._require_field(upload, "upload_url"),
            "speech_model": "universal",
        }
        code = convert_language(language, english_code="en_us")
        if code == "auto":
            payload["language_detection"] = True
        else:
            payload["language_code"] = code

        job = self._request(
            "POST", f"{self.BASE_URL}/transcript", headers=headers, json=payload
        )
        transcript_id = self._require_field(job, "id")
        result = self._poll(f"{self.BASE_URL}/transcript/{transcript_id}", headers)

        if result.get("status") == "error":
            raise ProviderRequestFailedError(
                f"AssemblyAI transcription failed: {result.get('error') or 'Unknown error'}"
            )
        return result.get("text") or ""

    def _is_finished(self, result: Dict[str, Any]) -> bool:
        return result.get("status") in ("completed", "error")


class GladiaProvider(_PollingProvider):
    kind = ProviderKind.GLADIA
    name = "Gladia"
    BASE_URL = "https://api.gladia.io/v2"

    def _transcribe_wav(self, wav_data: bytes, language: str) -> str:
        headers = {"x-gladia-key": self.api_key}

        upload = self._request(
            "POST",
            f"{self.BASE_URL}/upload",
            headers=headers,
            files={"audio": ("audio.wav", wav_data, "audio/wav")},
        )

        code = convert_language(language)
        payload: Dict[str, Any] = {
            "audio_url": self._require_field(upload, "audio_url"),
            "detect_language": code == "auto",
        }
        if code != "auto":
            payload["language"] = code

        job = self._request(
            "POST", f"{self.BASE_URL}/pre-recorded", headers=headers, json=payload
        )
        result = self._poll(self._require_field(job, "result_url"), headers)

        if result.get("status") == "error":
            raise ProviderRequestFailedError(
                f"Gladia transcription failed: {result.get('error_code') or 'Unknown error'}"
            )
        transcription = (result.get("result") or {}).get("transcription") or {}
        return transcription.get("full_transcript") or ""

    def _is_finished(self, result: Dict[str, Any]) -> bool:
        if result.get("status") in ("done", "error"):
            return True
        transcription = (result.get("result") or {}).get("transcription") or {}
        return transcription.get("full_transcript") is not None
