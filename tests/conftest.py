import asyncio
import io
from collections import Counter
from typing import Iterable, Optional, Set

import numpy as np
import pytest
import soundfile as sf

from audio.context import OfflineAudioContext
from audio.samples import SampleNotFoundError, SampleSource
from core.models import Note, Score, ScoreSnapshot, SignatureOverride
from core.test_data import create_default_instruments


def make_snapshot(notes: Iterable[Note] = (),
                  overrides: Iterable[SignatureOverride] = (),
                  tempo: float = 100,
                  time_signature: str = "4/4",
                  key_signature: str = "D",
                  total_measures: int = 8) -> ScoreSnapshot:
    return ScoreSnapshot(
        score=Score(
            title="Test",
            key_signature=key_signature,
            time_signature=time_signature,
            tempo=tempo,
            total_measures=total_measures,
        ),
        instruments=create_default_instruments(),
        notes=tuple(notes),
        overrides=tuple(overrides),
    )


def wav_bytes(seconds: float = 0.5, frequency: float = 440.0, sample_rate: int = 22050) -> bytes:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    data = (0.5 * np.sin(2 * np.pi * frequency * t)).astype(np.float32)
    buffer = io.BytesIO()
    sf.write(buffer, data, sample_rate, format="WAV", subtype="FLOAT")
    return buffer.getvalue()


class CountingSource(SampleSource):
    """In-memory sample source that counts fetches and can be held open."""

    def __init__(self, missing: Optional[Set[str]] = None, broken: Optional[Set[str]] = None):
        self.calls = Counter()
        self.missing = missing or set()
        self.broken = broken or set()
        self.gate: Optional[asyncio.Event] = None

    async def fetch(self, category: str, sample_key: str) -> bytes:
        key = f"{category}/{sample_key}"
        self.calls[key] += 1
        if self.gate is not None:
            await self.gate.wait()
        if key in self.missing:
            raise SampleNotFoundError(key)
        if key in self.broken:
            return b"not audio"
        return wav_bytes()


@pytest.fixture
def offline_context():
    context = OfflineAudioContext(sample_rate=44100, buffer_size=512)
    yield context
    context.close()


@pytest.fixture
def counting_source():
    return CountingSource()


@pytest.fixture
def snapshot_factory():
    return make_snapshot
