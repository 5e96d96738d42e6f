from .audio_processor import AudioChunker, join_transcripts
from .capture import AudioDevice, AudioFrame, FrameQueue, SoundDeviceCapture, list_input_devices
from .recorder import AudioRecordingManager, RecordingSession, RecordingState
from .resampler import StreamingResampler, downmix, resample
from .vad import EnergyScorer, VoiceActivityGate, WebRtcScorer, create_scorer

__all__ = [
    "AudioChunker",
    "join_transcripts",
    "AudioDevice",
    "AudioFrame",
    "FrameQueue",
    "SoundDeviceCapture",
    "list_input_devices",
    "AudioRecordingManager",
    "RecordingSession",
    "RecordingState",
    "StreamingResampler",
    "downmix",
    "resample",
    "EnergyScorer",
    "VoiceActivityGate",
    "WebRtcScorer",
    "create_scorer",
]
