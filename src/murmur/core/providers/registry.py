from typing import Callable, Dict, Optional

import requests

from ...utils.logger import get_logger
from ..errors import ProviderUnauthenticatedError
from ..settings import Settings
from .base import Provider, ProviderKind
from .remote import AssemblyAIProvider, DeepgramProvider, GladiaProvider, MistralProvider

logger = get_logger(__name__)

RemoteFactory = Callable[[str], Provider]


def select_provider_kind(settings: Settings) -> ProviderKind:
    """Which provider the next request goes to; depends on configuration only."""
    return ProviderKind(settings.transcription_provider)


class ProviderRegistry:
    """Maps each ``ProviderKind`` to a ready provider instance."""

    def __init__(
        self,
        local: Provider,
        session: Optional[requests.Session] = None,
        remote_factories: Optional[Dict[ProviderKind, RemoteFactory]] = None,
    ):
        self._local = local
        self._session = session or requests.Session()
        self._factories: Dict[ProviderKind, RemoteFactory] = {
            ProviderKind.MISTRAL: lambda key: MistralProvider(key, session=self._session),
            ProviderKind.DEEPGRAM: lambda key: DeepgramProvider(key, session=self._session),
            ProviderKind.ASSEMBLYAI: lambda key: AssemblyAIProvider(key, session=self._session),
            ProviderKind.GLADIA: lambda key: GladiaProvider(key, session=self._session),
        }
        if remote_factories:
            self._factories.update(remote_factories)

    def resolve(self, settings: Settings, kind: Optional[ProviderKind] = None) -> Provider:
        """
        Provider for ``kind`` (default: the configured one).

        Raises:
            ProviderUnauthenticatedError: A remote provider has no API key.
        """
        kind = kind or select_provider_kind(settings)
        if kind is ProviderKind.LOCAL:
            return self._local

        api_key = settings.get_api_key(kind.value)
        if not api_key:
            raise ProviderUnauthenticatedError(
                f"No API key configured for {kind.value}; add one in settings"
            )
        return self._factories[kind](api_key)
