from .settings import (
    LOCAL_PROVIDER,
    REMOTE_PROVIDERS,
    ModelUnloadTimeout,
    RecordingMode,
    Settings,
    get_data_dir,
    get_default_cache_dir,
)

__all__ = [
    "LOCAL_PROVIDER",
    "REMOTE_PROVIDERS",
    "ModelUnloadTimeout",
    "RecordingMode",
    "Settings",
    "get_data_dir",
    "get_default_cache_dir",
]
