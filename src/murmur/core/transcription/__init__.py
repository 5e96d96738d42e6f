from .lane import Lane, TranscriptionHandle, TranscriptionRequest, TranscriptOutput
from .manager import TranscriptionManager

__all__ = [
    "Lane",
    "TranscriptionHandle",
    "TranscriptionRequest",
    "TranscriptOutput",
    "TranscriptionManager",
]
