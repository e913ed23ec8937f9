"""
DSP utilities and building blocks.

Biquad filters, the compressor kernel, reverb impulse synthesis, etc.
"""
from typing import Optional, Tuple

import numpy as np
from numba import jit
from scipy.signal import butter, lfilter


FILTER_TYPES = ("lowpass", "highpass", "bandpass", "notch", "peaking", "allpass")


def biquad_coefficients(filter_type: str,
                        freq: float,
                        q: float,
                        sample_rate: int,
                        gain_db: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
    """
    Calculate normalized biquad coefficients (RBJ cookbook).

    Args:
        filter_type: "lowpass", "highpass", "bandpass", "notch", "peaking", "allpass"
        freq: Cutoff/center frequency in Hz
        q: Filter resonance/Q
        sample_rate: Audio sample rate
        gain_db: Gain in decibels (peaking only)

    Returns:
        (b, a) coefficient arrays for scipy.signal.lfilter
    """
    freq = max(20.0, min(freq, sample_rate / 2.0 - 1.0))
    q = max(0.1, min(q, 20.0))

    w0 = 2.0 * np.pi * freq / sample_rate
    cos_w0 = np.cos(w0)
    sin_w0 = np.sin(w0)
    alpha = sin_w0 / (2.0 * q)
    a0 = 1.0 + alpha
    a1 = -2.0 * cos_w0
    a2 = 1.0 - alpha

    if filter_type == "lowpass":
        b0 = (1.0 - cos_w0) / 2.0
        b1 = 1.0 - cos_w0
        b2 = (1.0 - cos_w0) / 2.0

    elif filter_type == "highpass":
        b0 = (1.0 + cos_w0) / 2.0
        b1 = -(1.0 + cos_w0)
        b2 = (1.0 + cos_w0) / 2.0

    elif filter_type == "bandpass":
        b0 = alpha
        b1 = 0.0
        b2 = -alpha

    elif filter_type == "notch":
        b0 = 1.0
        b1 = -2.0 * cos_w0
        b2 = 1.0

    elif filter_type == "peaking":
        A = 10.0 ** (gain_db / 40.0)
        b0 = 1.0 + alpha * A
        b1 = -2.0 * cos_w0
        b2 = 1.0 - alpha * A
        a0 = 1.0 + alpha / A
        a2 = 1.0 - alpha / A

    elif filter_type == "allpass":
        b0 = 1.0 - alpha
        b1 = -2.0 * cos_w0
        b2 = 1.0 + alpha

    else:
        raise ValueError(f"Unknown filter type: {filter_type}")

    # Normalize coefficients
    b = np.array([b0, b1, b2], dtype=np.float64) / a0
    a = np.array([1.0, a1 / a0, a2 / a0], dtype=np.float64)
    return b, a


class BiquadFilter:
    """
    Stateful biquad filter.

    Keeps the delay-line state between blocks so a note's filter runs
    continuously across render quanta.
    """

    def __init__(self, filter_type: str, sample_rate: int):
        """
        Args:
            filter_type: One of FILTER_TYPES
            sample_rate: Audio sample rate
        """
        if filter_type not in FILTER_TYPES:
            raise ValueError(f"Unknown filter type: {filter_type}")
        self.filter_type = filter_type
        self.sample_rate = sample_rate
        self.freq = 1000.0
        self.q = 0.707
        self.gain_db = 0.0

        self._b, self._a = biquad_coefficients(filter_type, self.freq, self.q, sample_rate)
        self._zi = np.zeros(2, dtype=np.float64)

    def configure(self, freq: float, q: float, gain_db: float = 0.0):
        """
        Update filter parameters (recomputes coefficients only on change).

        Args:
            freq: Cutoff frequency in Hz
            q: Q value
            gain_db: Gain in decibels (peaking only)
        """
        if (freq, q, gain_db) == (self.freq, self.q, self.gain_db):
            return
        self.freq, self.q, self.gain_db = freq, q, gain_db
        self._b, self._a = biquad_coefficients(
            self.filter_type, freq, q, self.sample_rate, gain_db
        )

    def process(self, input_buffer: np.ndarray) -> np.ndarray:
        """
        Process audio through filter.

        Args:
            input_buffer: Input audio (mono)

        Returns:
            Filtered audio
        """
        output, self._zi = lfilter(self._b, self._a, input_buffer, zi=self._zi)
        return output


@jit(nopython=True)
def compress(buffer: np.ndarray,
             envelope_db: float,
             threshold: float,
             knee: float,
             ratio: float,
             attack: float,
             release: float,
             sample_rate: int):
    """
    Feed-forward compressor with soft knee (JIT-compiled for speed).

    Args:
        buffer: Audio buffer to process
        envelope_db: Gain reduction carried over from the previous block (dB, <= 0)
        threshold: Threshold in dB
        knee: Knee width in dB
        ratio: Compression ratio (e.g. 3.0 for 3:1)
        attack: Attack time (seconds)
        release: Release time (seconds)
        sample_rate: Audio sample rate

    Returns:
        (compressed buffer, gain reduction at end of block in dB)
    """
    output = np.empty_like(buffer)
    attack_coeff = np.exp(-1.0 / max(attack * sample_rate, 1.0))
    release_coeff = np.exp(-1.0 / max(release * sample_rate, 1.0))
    half_knee = knee / 2.0

    env = envelope_db
    for i in range(len(buffer)):
        x = buffer[i]
        level = abs(x)
        if level < 1e-9:
            level_db = -180.0
        else:
            level_db = 20.0 * np.log10(level)

        # Static gain curve
        over = level_db - threshold
        if over <= -half_knee:
            target_db = level_db
        elif over >= half_knee or knee <= 0.0:
            target_db = threshold + over / ratio
        else:
            target_db = level_db + (1.0 / ratio - 1.0) * (over + half_knee) ** 2 / (2.0 * knee)
        reduction = target_db - level_db

        # Attack when reduction deepens, release when it recovers
        if reduction < env:
            env = attack_coeff * env + (1.0 - attack_coeff) * reduction
        else:
            env = release_coeff * env + (1.0 - release_coeff) * reduction

        output[i] = x * 10.0 ** (env / 20.0)

    return output, env


def reverb_impulse(sample_rate: int,
                   seconds: float = 1.8,
                   decay: float = 2.5,
                   rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """
    Synthesize a hall-like impulse response.

    White noise, gently low-passed, shaped by (1 - t/T)^decay.

    Args:
        sample_rate: Audio sample rate
        seconds: Impulse length
        decay: Decay exponent (higher = shorter tail)
        rng: Random generator (for reproducible impulses)

    Returns:
        Mono impulse response (float32)
    """
    rng = rng or np.random.default_rng()
    length = max(1, int(sample_rate * seconds))
    noise = rng.uniform(-1.0, 1.0, length)

    # Soften the top end so the tail sounds like a room, not hiss
    cutoff = min(8000.0, sample_rate / 2.0 - 1.0) / (sample_rate / 2.0)
    b, a = butter(2, cutoff, btype="low")
    noise = lfilter(b, a, noise)

    shape = np.power(1.0 - np.arange(length) / length, decay)
    return (noise * shape).astype(np.float32)


def db_to_linear(db: float) -> float:
    """
    Convert decibels to linear gain.

    Args:
        db: Gain in decibels

    Returns:
        Linear gain value

    Example:
        >>> db_to_linear(0.0)
        1.0
        >>> db_to_linear(-6.0)
        0.5011872336272722
    """
    return 10.0 ** (db / 20.0)


def linear_to_db(linear: float) -> float:
    """
    Convert linear gain to decibels.

    Args:
        linear: Linear gain value

    Returns:
        Gain in decibels

    Example:
        >>> linear_to_db(1.0)
        0.0
        >>> linear_to_db(0.5)
        -6.020599913279624
    """
    if linear <= 0.0:
        return -np.inf
    return 20.0 * np.log10(linear)


def peak_level(buffer: np.ndarray) -> float:
    """
    Calculate peak level of audio buffer.

    Args:
        buffer: Audio buffer

    Returns:
        Peak level (0.0-1.0+)
    """
    if len(buffer) == 0:
        return 0.0
    return float(np.max(np.abs(buffer)))


def stereo_from_mono(buffer_mono: np.ndarray) -> np.ndarray:
    """
    Convert mono buffer to stereo by duplicating channels.

    Args:
        buffer_mono: Mono audio buffer (1D array)

    Returns:
        Stereo audio buffer (frames x 2)
    """
    return np.stack([buffer_mono, buffer_mono], axis=-1)


def clip_audio(buffer: np.ndarray, threshold: float = 1.0) -> np.ndarray:
    """
    Hard clip audio to prevent overflow.

    Args:
        buffer: Audio buffer
        threshold: Clipping threshold

    Returns:
        Clipped audio
    """
    return np.clip(buffer, -threshold, threshold)
