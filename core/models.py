"""
Immutable data models for Ensemble.

All models are immutable dataclasses to support:
- Safe sharing between the scheduler, playhead loop and audio thread
- A score snapshot that cannot change during a playback session
- Direct mapping to the data-access layer's JSON payload
"""
from dataclasses import dataclass, field
from typing import Tuple, Optional, Dict, Any, List

from core.constants import (
    BPM_MAX,
    BPM_MIN,
    DUR_TO_BEATS,
    DYNAMIC_GAIN,
    is_valid_pitch,
    parse_time_signature,
)


def _validate_tempo(tempo) -> None:
    if not BPM_MIN <= tempo <= BPM_MAX:
        raise ValueError(f"Tempo must be between {BPM_MIN} and {BPM_MAX} BPM, got {tempo}")


@dataclass(frozen=True)
class Score:
    """
    Score metadata (the global signature defaults).

    Attributes:
        title: Score title
        key_signature: Base key (e.g., "D", "Bb")
        time_signature: Base time signature (e.g., "4/4")
        tempo: Base tempo in BPM
        total_measures: Number of measures in the score
    """
    title: str = "Global Symphonia No. 1"
    key_signature: str = "D"
    time_signature: str = "4/4"
    tempo: float = 100
    total_measures: int = 32

    def __post_init__(self):
        """Validate score metadata."""
        _validate_tempo(self.tempo)
        parse_time_signature(self.time_signature)
        if self.total_measures < 1:
            raise ValueError(f"Score needs at least one measure, got {self.total_measures}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "title": self.title,
            "key_signature": self.key_signature,
            "time_signature": self.time_signature,
            "tempo": self.tempo,
            "total_measures": self.total_measures,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Score":
        """Create Score from dictionary."""
        return cls(
            title=data.get("title", "Global Symphonia No. 1"),
            key_signature=data.get("key_signature", "D"),
            time_signature=data.get("time_signature", "4/4"),
            tempo=data.get("tempo", 100),
            total_measures=data.get("total_measures", 32),
        )


@dataclass(frozen=True)
class Instrument:
    """
    One staff of the ensemble.

    Attributes:
        id: Instrument ID (e.g., "violin1")
        name: Display name
        abbreviation: Short staff label
        clef: "treble", "alto" or "bass"
        sort_order: Staff position (top to bottom)
    """
    id: str
    name: str
    abbreviation: str = ""
    clef: str = "treble"
    sort_order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "abbreviation": self.abbreviation,
            "clef": self.clef,
            "sort_order": self.sort_order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Instrument":
        """Create Instrument from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            abbreviation=data.get("abbreviation", ""),
            clef=data.get("clef", "treble"),
            sort_order=data.get("sort_order", 0),
        )


@dataclass(frozen=True)
class SignatureOverride:
    """
    Per-measure signature change.

    Only the fields that differ from the previous effective value are set;
    None means "inherit".

    Attributes:
        measure: Measure number (1-based) where the change takes effect
        key_signature: New key, or None
        time_signature: New time signature, or None
        tempo: New tempo in BPM, or None
    """
    measure: int
    key_signature: Optional[str] = None
    time_signature: Optional[str] = None
    tempo: Optional[float] = None

    def __post_init__(self):
        """Validate override."""
        if self.measure < 1:
            raise ValueError(f"Measure must be >= 1, got {self.measure}")
        if self.time_signature:
            parse_time_signature(self.time_signature)
        if self.tempo:
            _validate_tempo(self.tempo)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "measure": self.measure,
            "key_signature": self.key_signature,
            "time_signature": self.time_signature,
            "tempo": self.tempo,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignatureOverride":
        """Create SignatureOverride from dictionary."""
        return cls(
            measure=data["measure"],
            key_signature=data.get("key_signature") or None,
            time_signature=data.get("time_signature") or None,
            tempo=data.get("tempo") or None,
        )


@dataclass(frozen=True)
class Note:
    """
    Note (or rest) placed in a measure.

    Attributes:
        id: Note ID
        instrument_id: Owning instrument
        pitch: Pitch name (e.g., "D5", "F#4"); ignored for rests
        measure: Measure number (1-based)
        beat: Beat offset within the measure (1-based, fractional allowed)
        duration: Duration class ("whole" ... "sixteenth")
        is_rest: Whether this is a rest
        dynamic: Dynamic marking ("pp" ... "ff")
        vibrato: Whether vibrato is applied
        accidental: Accidental as entered in the editor (display only)
    """
    id: str
    instrument_id: str
    pitch: str
    measure: int
    beat: float
    duration: str
    is_rest: bool = False
    dynamic: str = "mf"
    vibrato: bool = False
    accidental: Optional[str] = None

    def __post_init__(self):
        """Validate note values."""
        if self.measure < 1:
            raise ValueError(f"Measure must be >= 1, got {self.measure}")
        if self.beat < 1:
            raise ValueError(f"Beat must be >= 1, got {self.beat}")
        if self.duration not in DUR_TO_BEATS:
            raise ValueError(f"Invalid duration: {self.duration}")
        if self.dynamic not in DYNAMIC_GAIN:
            raise ValueError(f"Invalid dynamic: {self.dynamic}")
        if not self.is_rest and not is_valid_pitch(self.pitch):
            raise ValueError(f"Invalid pitch: {self.pitch!r}")

    @property
    def beats(self) -> float:
        """Length of the note in beats."""
        return DUR_TO_BEATS[self.duration]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "instrument_id": self.instrument_id,
            "pitch": self.pitch,
            "measure": self.measure,
            "beat": self.beat,
            "duration": self.duration,
            "is_rest": self.is_rest,
            "dynamic": self.dynamic,
            "vibrato": self.vibrato,
            "accidental": self.accidental,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        """Create Note from dictionary (accepts 0/1 integer flags)."""
        return cls(
            id=str(data["id"]),
            instrument_id=data["instrument_id"],
            pitch=data.get("pitch") or "B4",
            measure=data["measure"],
            beat=float(data.get("beat", 1)),
            duration=data.get("duration", "quarter"),
            is_rest=bool(data.get("is_rest", False)),
            dynamic=data.get("dynamic") or "mf",
            vibrato=bool(data.get("vibrato", False)),
            accidental=data.get("accidental"),
        )


@dataclass(frozen=True)
class ScoreSnapshot:
    """
    Everything playback needs, captured at one instant.

    Attributes:
        score: Score metadata
        instruments: Instruments in staff order
        notes: Notes in measure/beat order
        overrides: Signature overrides, sorted by measure
    """
    score: Score
    instruments: Tuple[Instrument, ...] = field(default_factory=tuple)
    notes: Tuple[Note, ...] = field(default_factory=tuple)
    overrides: Tuple[SignatureOverride, ...] = field(default_factory=tuple)

    def __post_init__(self):
        """Keep overrides in ascending measure order."""
        ordered = tuple(sorted(self.overrides, key=lambda o: o.measure))
        # Use object.__setattr__ to modify frozen dataclass during init
        object.__setattr__(self, "instruments", tuple(self.instruments))
        object.__setattr__(self, "notes", tuple(self.notes))
        object.__setattr__(self, "overrides", ordered)

    def playable_notes(self, from_measure: int = 1) -> List[Note]:
        """Non-rest notes at or after from_measure."""
        return [n for n in self.notes if not n.is_rest and n.measure >= from_measure]

    def last_playable_measure(self, from_measure: int = 1) -> int:
        """
        Last measure that holds a playable note.

        Trailing empty measures are not played. Returns from_measure
        when nothing is playable.
        """
        last = from_measure
        for note in self.playable_notes(from_measure):
            if note.measure > last:
                last = note.measure
        return last

    def get_instrument(self, instrument_id: str) -> Optional[Instrument]:
        """Look up an instrument by ID."""
        for instrument in self.instruments:
            if instrument.id == instrument_id:
                return instrument
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the data-access layer's payload shape."""
        return {
            "score": self.score.to_dict(),
            "instruments": [i.to_dict() for i in self.instruments],
            "notes": [n.to_dict() for n in self.notes],
            "measureSignatures": [o.to_dict() for o in self.overrides],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoreSnapshot":
        """Create ScoreSnapshot from the data-access layer's payload."""
        return cls(
            score=Score.from_dict(data.get("score", {})),
            instruments=tuple(Instrument.from_dict(i) for i in data.get("instruments", [])),
            notes=tuple(Note.from_dict(n) for n in data.get("notes", [])),
            overrides=tuple(
                SignatureOverride.from_dict(o) for o in data.get("measureSignatures", [])
            ),
        )
