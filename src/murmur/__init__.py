# murmur - local push-to-talk dictation pipeline

"""
Speech-to-text backend for push-to-talk and toggle dictation.
Captures microphone audio, gates it by voice activity, and transcribes it
with a local sherpa-onnx model or a cloud transcription provider.
"""

__version__ = "0.1.0"
__app_name__ = "murmur"
