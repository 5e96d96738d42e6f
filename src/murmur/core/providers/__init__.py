from .base import LocalEngineProvider, Provider, ProviderKind, encode_wav
from .registry import ProviderRegistry, select_provider_kind
from .remote import (
    AssemblyAIProvider,
    DeepgramProvider,
    GladiaProvider,
    MistralProvider,
    RemoteProvider,
    convert_language,
)

__all__ = [
    "LocalEngineProvider",
    "Provider",
    "ProviderKind",
    "encode_wav",
    "ProviderRegistry",
    "select_provider_kind",
    "AssemblyAIProvider",
    "DeepgramProvider",
    "GladiaProvider",
    "MistralProvider",
    "RemoteProvider",
    "convert_language",
]
