# Core module - dictation pipeline

"""
Audio capture, voice activity gating, model management and transcription.
Nothing in here talks to a UI; status leaves through ``events.EventBus``.
"""
