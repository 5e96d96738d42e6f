from unittest.mock import MagicMock

import pytest

from murmur.core.errors import ProviderUnauthenticatedError
from murmur.core.providers import (
    AssemblyAIProvider,
    DeepgramProvider,
    GladiaProvider,
    MistralProvider,
    ProviderKind,
    ProviderRegistry,
    select_provider_kind,
)
from murmur.core.settings import Settings


@pytest.fixture
def local():
    provider = MagicMock()
    provider.kind = ProviderKind.LOCAL
    return provider


def test_select_provider_kind():
    assert select_provider_kind(Settings()) is ProviderKind.LOCAL
    assert select_provider_kind(Settings(transcription_provider="Deepgram")) is ProviderKind.DEEPGRAM


def test_is_remote():
    assert not ProviderKind.LOCAL.is_remote
    assert all(kind.is_remote for kind in ProviderKind if kind is not ProviderKind.LOCAL)


class TestProviderRegistry:
    def test_local(self, local):
        registry = ProviderRegistry(local)
        assert registry.resolve(Settings()) is local

    @pytest.mark.parametrize(
        "name, cls",
        [
            ("mistral", MistralProvider),
            ("deepgram", DeepgramProvider),
            ("assemblyai", AssemblyAIProvider),
            ("gladia", GladiaProvider),
        ],
    )
    def test_remote_providers(self, local, name, cls):
        session = MagicMock()
        registry = ProviderRegistry(local, session=session)
        settings = Settings(transcription_provider=name, api_keys={name: " secret "})

        provider = registry.resolve(settings)

        assert isinstance(provider, cls)
        assert provider.api_key == "secret"
        assert provider._session is session

    def test_missing_api_key(self, local):
        registry = ProviderRegistry(local)
        settings = Settings(transcription_provider="gladia", api_keys={"gladia": "   "})

        with pytest.raises(ProviderUnauthenticatedError, match="gladia"):
            registry.resolve(settings)

    def test_explicit_kind_overrides_settings(self, local):
        registry = ProviderRegistry(local)
        settings = Settings(transcription_provider="mistral", api_keys={"mistral": "k"})

        assert registry.resolve(settings, ProviderKind.LOCAL) is local

    def test_custom_factory(self, local):
        fake = MagicMock()
        registry = ProviderRegistry(local, remote_factories={ProviderKind.MISTRAL: lambda key: fake})
        settings = Settings(transcription_provider="mistral", api_keys={"mistral": "k"})

        assert registry.resolve(settings) is fake
