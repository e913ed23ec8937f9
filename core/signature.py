"""
Effective signature resolution.

Shared by score layout and playback: both ask "what key, time signature
and tempo are in force at measure N?" and must get the same answer.
"""
from dataclasses import dataclass
from typing import Iterable

from core.constants import parse_time_signature
from core.models import Score, ScoreSnapshot, SignatureOverride


@dataclass(frozen=True)
class EffectiveSignature:
    """
    Key, time signature and tempo in force at one measure.

    Attributes:
        key: Key signature (e.g., "D")
        time: Time signature (e.g., "3/4")
        tempo: Tempo in BPM
    """
    key: str
    time: str
    tempo: float

    @property
    def beats_per_measure(self) -> int:
        """Numerator of the time signature."""
        return parse_time_signature(self.time)[0]

    @property
    def seconds_per_beat(self) -> float:
        """Length of one beat in seconds at this tempo."""
        return 60.0 / self.tempo


def resolve_signature(measure: int,
                      score: Score,
                      overrides: Iterable[SignatureOverride]) -> EffectiveSignature:
    """
    Resolve the effective signature for a measure.

    Starts from the score defaults and walks the overrides in ascending
    measure order; every override at or before the measure replaces each
    field it sets. Key, time and tempo inherit independently.

    Args:
        measure: Measure number (1-based, within the score)
        score: Score metadata (base values)
        overrides: Per-measure overrides, any order

    Returns:
        EffectiveSignature for the measure
    """
    key = score.key_signature
    time = score.time_signature
    tempo = score.tempo

    for override in sorted(overrides, key=lambda o: o.measure):
        if override.measure > measure:
            break
        if override.key_signature:
            key = override.key_signature
        if override.time_signature:
            time = override.time_signature
        if override.tempo:
            tempo = override.tempo

    return EffectiveSignature(key=key, time=time, tempo=tempo)


def effective_signature(measure: int, snapshot: ScoreSnapshot) -> EffectiveSignature:
    """Resolve the effective signature for a measure of a snapshot."""
    return resolve_signature(measure, snapshot.score, snapshot.overrides)
