"""Tests for splitting long dictations and joining chunk transcripts."""

import numpy as np
import pytest

from murmur.core.audio.audio_processor import AudioChunker, join_transcripts

from conftest import silence, tone

RATE = 16000


@pytest.fixture
def chunker():
    return AudioChunker(max_seconds=30.0)


class TestAudioChunker:
    def test_short_audio_is_not_split(self, chunker):
        audio = tone(10.0)

        chunks = chunker.split(audio)

        assert not chunker.needs_chunking(audio)
        assert len(chunks) == 1
        assert chunks[0] is audio

    def test_cuts_at_pauses(self, chunker):
        """Cuts land inside the pauses rather than at the 30 s mark."""
        audio = np.concatenate(
            [tone(20.0), silence(0.5), tone(24.5), silence(0.5), tone(24.5)]
        )

        bounds = chunker.plan(audio)

        assert len(bounds) == 3
        assert 20.0 * RATE <= bounds[0].end <= 20.5 * RATE
        assert 45.0 * RATE <= bounds[1].end <= 45.5 * RATE
        assert bounds[-1].end == len(audio)
        for previous, current in zip(bounds, bounds[1:]):
            assert previous.end == current.start

    def test_forced_cut_without_pauses(self, chunker):
        audio = tone(70.0)

        bounds = chunker.plan(audio)

        assert [(b.start, b.end) for b in bounds] == [
            (0, 30 * RATE),
            (30 * RATE, 60 * RATE),
            (60 * RATE, 70 * RATE),
        ]

    def test_chunks_overlap(self, chunker):
        audio = tone(70.0)

        chunks = chunker.split(audio)

        overlap = int(0.1 * RATE)
        assert len(chunks) == 3
        assert len(chunks[0]) == 30 * RATE + overlap
        assert len(chunks[1]) == 30 * RATE + 2 * overlap
        assert len(chunks[2]) == 10 * RATE + overlap

    def test_no_chunk_exceeds_limit(self, chunker):
        audio = np.concatenate([tone(12.0), silence(1.0)] * 8)

        for bounds in chunker.plan(audio):
            assert bounds.duration_seconds <= 30.0

    def test_min_must_be_below_max(self):
        with pytest.raises(ValueError):
            AudioChunker(max_seconds=5.0, min_seconds=5.0)


class TestJoinTranscripts:
    def test_joins_with_single_spaces(self):
        assert join_transcripts([" hello ", "", "world  again"]) == "hello world again"

    def test_empty(self):
        assert join_transcripts([]) == ""
        assert join_transcripts(["  ", ""]) == ""
