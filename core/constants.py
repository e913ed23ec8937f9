"""
Musical constants and utilities.

Duration classes, dynamics, instrument balance, pitch names, etc.
"""
import math
import re
from typing import Tuple

# Duration class to number of quarter-note beats
DUR_TO_BEATS = {
    "whole": 4.0,
    "half": 2.0,
    "quarter": 1.0,
    "eighth": 0.5,
    "sixteenth": 0.25,
}

# Dynamic marking to gain multiplier
DYNAMIC_GAIN = {
    "pp": 0.3,
    "p": 0.5,
    "mp": 0.7,
    "mf": 1.0,
    "f": 1.3,
    "ff": 1.6,
}

# Per-instrument gain scaling (balances the string section)
INST_GAIN = {
    "violin1": 0.9,
    "violin2": 0.85,
    "viola": 0.9,
    "cello": 1.0,
    "contrabass": 1.1,
}

# Instrument ID to soundfont sample category
INST_TO_SOUNDFONT = {
    "violin1": "violin",
    "violin2": "violin",
    "viola": "viola",
    "cello": "cello",
    "contrabass": "contrabass",
}
DEFAULT_SOUNDFONT = "violin"

# Soundfont sample names use flats (Db not C#)
SHARP_TO_FLAT = {
    "C#": "Db",
    "D#": "Eb",
    "F#": "Gb",
    "G#": "Ab",
    "A#": "Bb",
}

# Semitone offset of each letter relative to A in the same octave
NOTE_SEMITONES = {
    "C": -9,
    "D": -7,
    "E": -5,
    "F": -4,
    "G": -2,
    "A": 0,
    "B": 2,
}

# Standard BPM ranges
BPM_MIN = 20
BPM_MAX = 300

# Reference pitch
A4_FREQUENCY = 440.0

PITCH_PATTERN = re.compile(r"^([A-G])(#|b)?(\d)$")
TIME_SIGNATURE_PATTERN = re.compile(r"^(\d+)/(\d+)$")


def parse_pitch(pitch: str) -> Tuple[str, str, int]:
    """
    Split a pitch name into letter, accidental and octave.

    Args:
        pitch: Pitch name (e.g., "C4", "F#5", "Bb3")

    Returns:
        (letter, accidental, octave) where accidental is "#", "b" or ""

    Raises:
        ValueError: If pitch name is invalid

    Example:
        >>> parse_pitch("F#5")
        ('F', '#', 5)
    """
    match = PITCH_PATTERN.match(pitch or "")
    if not match:
        raise ValueError(f"Invalid pitch name: {pitch!r}")
    letter, accidental, octave = match.groups()
    return letter, accidental or "", int(octave)


def is_valid_pitch(pitch: str) -> bool:
    """Check whether a pitch name parses."""
    return bool(PITCH_PATTERN.match(pitch or ""))


def pitch_to_frequency(pitch: str) -> float:
    """
    Convert pitch name to frequency in Hz (12-tone equal temperament).

    Unparseable pitches fall back to A4 so synthesis never fails.

    Args:
        pitch: Pitch name (e.g., "A4", "C#5")

    Returns:
        Frequency in Hz

    Example:
        >>> pitch_to_frequency("A4")
        440.0
        >>> round(pitch_to_frequency("C4"), 2)
        261.63
    """
    try:
        letter, accidental, octave = parse_pitch(pitch)
    except ValueError:
        return A4_FREQUENCY

    semitones = NOTE_SEMITONES[letter] + (octave - 4) * 12
    if accidental == "#":
        semitones += 1
    elif accidental == "b":
        semitones -= 1

    # Formula: frequency = 440 * 2^(semitones / 12)
    return A4_FREQUENCY * math.pow(2.0, semitones / 12.0)


def pitch_to_sample_key(pitch: str) -> str:
    """
    Convert pitch name to the soundfont sample naming convention.

    Args:
        pitch: Pitch name (e.g., "C#4")

    Returns:
        Sample name (e.g., "Db4"); "C4" for unparseable pitches

    Example:
        >>> pitch_to_sample_key("G#3")
        'Ab3'
        >>> pitch_to_sample_key("Eb5")
        'Eb5'
    """
    try:
        letter, accidental, octave = parse_pitch(pitch)
    except ValueError:
        return "C4"

    if accidental == "#":
        flat = SHARP_TO_FLAT.get(letter + "#")
        if flat:
            return f"{flat}{octave}"
    return f"{letter}{accidental}{octave}"


def instrument_category(instrument_id: str) -> str:
    """Soundfont category for an instrument ID (violin if unknown)."""
    return INST_TO_SOUNDFONT.get(instrument_id, DEFAULT_SOUNDFONT)


def parse_time_signature(time_signature: str) -> Tuple[int, int]:
    """
    Parse a time signature string.

    Args:
        time_signature: Time signature (e.g., "3/4")

    Returns:
        (numerator, denominator)

    Raises:
        ValueError: If the string is malformed or has a zero part
    """
    match = TIME_SIGNATURE_PATTERN.match((time_signature or "").strip())
    if not match:
        raise ValueError(f"Invalid time signature: {time_signature!r}")
    numerator, denominator = int(match.group(1)), int(match.group(2))
    if numerator <= 0 or denominator <= 0:
        raise ValueError(f"Invalid time signature: {time_signature!r}")
    return numerator, denominator


def beats_for_duration(duration: str) -> float:
    """Number of beats for a duration class (1 beat if unknown)."""
    return DUR_TO_BEATS.get(duration, 1.0)
