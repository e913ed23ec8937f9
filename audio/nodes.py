"""
Audio graph nodes.

Pull-based mono graph rendered in blocks ("render quanta"):
- Each node sums its inputs and processes them once per block (memoized,
  so a bus feeding two destinations is only computed once)
- Scheduled sources (oscillator, buffer player) only sound inside their
  start/stop window, and stop() with no time silences them immediately
- Silent branches are skipped cheaply via is_active()
"""
from dataclasses import dataclass, field
from typing import List, Optional, Union, TYPE_CHECKING

import numpy as np
from scipy import fft as sp_fft

from audio.dsp import FILTER_TYPES, BiquadFilter, compress, db_to_linear
from audio.params import AudioParam

if TYPE_CHECKING:
    from audio.context import AudioContext


OSCILLATOR_TYPES = ("sine", "square", "sawtooth", "triangle")

# Convolver normalization (matches the usual browser calibration)
_GAIN_CALIBRATION_DB = -58.0
_GAIN_CALIBRATION_SAMPLE_RATE = 44100.0
_MIN_POWER = 0.000125


@dataclass
class RenderQuantum:
    """
    One block of frames being rendered.

    Attributes:
        index: Monotonic block counter (memoization key)
        start_frame: First frame of the block on the context clock
        frames: Number of frames in the block
        sample_rate: Context sample rate
    """
    index: int
    start_frame: int
    frames: int
    sample_rate: int
    times: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        self.times = (self.start_frame + np.arange(self.frames)) / self.sample_rate

    @property
    def start_time(self) -> float:
        return self.start_frame / self.sample_rate

    @property
    def end_time(self) -> float:
        return (self.start_frame + self.frames) / self.sample_rate


@dataclass
class AudioBuffer:
    """
    Decoded audio (mono).

    Buffers carry their own sample rate and are independent of any
    context, so cached samples can be reused across contexts.

    Attributes:
        data: Samples (float32, -1.0 to 1.0)
        sample_rate: Sample rate of data
    """
    data: np.ndarray
    sample_rate: int

    @property
    def length(self) -> int:
        return len(self.data)

    @property
    def duration(self) -> float:
        return len(self.data) / self.sample_rate


class AudioNode:
    """Base class for all graph nodes."""

    def __init__(self, context: "AudioContext"):
        """
        Args:
            context: Owning audio context
        """
        self.context = context
        self.inputs: List["AudioNode"] = []
        self.outputs: List[Union["AudioNode", AudioParam]] = []
        self._cache_index: Optional[int] = None
        self._cache: Optional[np.ndarray] = None
        self._active_index: Optional[int] = None
        self._active = False

    def connect(self, destination: Union["AudioNode", AudioParam]):
        """
        Connect output to a node or a param (modulation).

        Returns:
            destination (for chaining)
        """
        destination.inputs.append(self)
        self.outputs.append(destination)
        return destination

    def disconnect(self):
        """Disconnect from every destination."""
        for destination in self.outputs:
            while self in destination.inputs:
                destination.inputs.remove(self)
        self.outputs.clear()

    def pull(self, quantum: RenderQuantum) -> np.ndarray:
        """Output for a block (computed once per block)."""
        if self._cache_index != quantum.index:
            if self.is_active(quantum):
                self._cache = self.process(quantum)
            else:
                self._cache = np.zeros(quantum.frames, dtype=np.float64)
            self._cache_index = quantum.index
        return self._cache

    def is_active(self, quantum: RenderQuantum) -> bool:
        """Whether the node can produce sound in this block."""
        if self._active_index != quantum.index:
            self._active = self._check_active(quantum)
            self._active_index = quantum.index
        return self._active

    def _check_active(self, quantum: RenderQuantum) -> bool:
        return any(node.is_active(quantum) for node in self.inputs)

    def mix_inputs(self, quantum: RenderQuantum) -> np.ndarray:
        """Sum of all inputs for a block."""
        mixed = np.zeros(quantum.frames, dtype=np.float64)
        for node in self.inputs:
            if node.is_active(quantum):
                mixed += node.pull(quantum)
        return mixed

    def process(self, quantum: RenderQuantum) -> np.ndarray:
        """
        Produce the node's output for a block.

        Args:
            quantum: Block being rendered

        Returns:
            Mono float64 array of quantum.frames samples
        """
        raise NotImplementedError()


class GainNode(AudioNode):
    """Multiplies its input by the gain param."""

    def __init__(self, context: "AudioContext"):
        super().__init__(context)
        self.gain = AudioParam("gain", 1.0)

    def process(self, quantum: RenderQuantum) -> np.ndarray:
        return self.mix_inputs(quantum) * self.gain.compute(quantum)


class BiquadFilterNode(AudioNode):
    """Second-order filter; params are sampled once per block."""

    def __init__(self, context: "AudioContext", filter_type: str = "lowpass"):
        super().__init__(context)
        self.frequency = AudioParam("frequency", 350.0, 10.0, context.sample_rate / 2.0)
        self.Q = AudioParam("Q", 1.0)
        self.gain = AudioParam("gain", 0.0)
        self._filter = BiquadFilter(filter_type, context.sample_rate)

    @property
    def type(self) -> str:
        return self._filter.filter_type

    @type.setter
    def type(self, filter_type: str):
        if filter_type not in FILTER_TYPES:
            raise ValueError(f"Unknown filter type: {filter_type}")
        self._filter = BiquadFilter(filter_type, self.context.sample_rate)

    def process(self, quantum: RenderQuantum) -> np.ndarray:
        self._filter.configure(
            float(self.frequency.compute(quantum)[0]),
            float(self.Q.compute(quantum)[0]),
            float(self.gain.compute(quantum)[0]),
        )
        return self._filter.process(self.mix_inputs(quantum))


class AudioScheduledSourceNode(AudioNode):
    """
    Source that plays inside a [start, stop) window on the context clock.

    Once scheduled, the window can only be cut short by calling stop()
    without a time, which silences the node for good.
    """

    def __init__(self, context: "AudioContext"):
        super().__init__(context)
        self.start_time: Optional[float] = None
        self.stop_time: Optional[float] = None
        self.cancelled = False

    def start(self, when: float = 0.0):
        """
        Schedule playback to begin at a context time.

        Raises:
            RuntimeError: If start() was already called
        """
        if self.start_time is not None:
            raise RuntimeError("start() may only be called once")
        self.start_time = max(0.0, float(when))

    def stop(self, when: Optional[float] = None):
        """
        Schedule the end of playback, or silence now if no time is given.

        Safe to call before start() and more than once.
        """
        if when is None:
            self.cancelled = True
            return
        self.stop_time = max(0.0, float(when))

    @property
    def finished(self) -> bool:
        """True once the node can never sound again."""
        if self.cancelled:
            return True
        return self.stop_time is not None and self.context.current_time >= self.stop_time

    def _check_active(self, quantum: RenderQuantum) -> bool:
        if self.cancelled or self.start_time is None:
            return False
        if self.start_time >= quantum.end_time:
            return False
        return self.stop_time is None or self.stop_time > quantum.start_time

    def window(self, quantum: RenderQuantum) -> np.ndarray:
        """Boolean mask of frames inside the play window."""
        mask = quantum.times >= self.start_time
        if self.stop_time is not None:
            mask &= quantum.times < self.stop_time
        return mask


class OscillatorNode(AudioScheduledSourceNode):
    """Periodic waveform with frequency and detune (cents) params."""

    def __init__(self, context: "AudioContext", wave_type: str = "sine"):
        super().__init__(context)
        if wave_type not in OSCILLATOR_TYPES:
            raise ValueError(f"Unknown oscillator type: {wave_type}")
        self.type = wave_type
        self.frequency = AudioParam("frequency", 440.0, 0.0, context.sample_rate / 2.0)
        self.detune = AudioParam("detune", 0.0)
        self._phase = 0.0

    def process(self, quantum: RenderQuantum) -> np.ndarray:
        mask = self.window(quantum).astype(np.float64)
        freq = self.frequency.compute(quantum) * np.power(2.0, self.detune.compute(quantum) / 1200.0)

        # Phase only advances while playing
        increment = 2.0 * np.pi * freq / quantum.sample_rate * mask
        advanced = np.cumsum(increment)
        phase = self._phase + advanced - increment
        self._phase = float((self._phase + advanced[-1]) % (2.0 * np.pi))

        if self.type == "sine":
            wave = np.sin(phase)
        elif self.type == "square":
            wave = np.where(np.sin(phase) >= 0.0, 1.0, -1.0)
        elif self.type == "sawtooth":
            wave = 2.0 * ((phase / (2.0 * np.pi)) % 1.0) - 1.0
        else:
            wave = 2.0 * np.abs(2.0 * ((phase / (2.0 * np.pi)) % 1.0) - 1.0) - 1.0
        return wave * mask


class AudioBufferSourceNode(AudioScheduledSourceNode):
    """Plays an AudioBuffer once, resampled to the context rate and detuned."""

    def __init__(self, context: "AudioContext"):
        super().__init__(context)
        self.buffer: Optional[AudioBuffer] = None
        self.playback_rate = AudioParam("playback_rate", 1.0, 0.0)
        self.detune = AudioParam("detune", 0.0)
        self._position = 0.0

    def _check_active(self, quantum: RenderQuantum) -> bool:
        if self.buffer is None or self._position >= self.buffer.length:
            return False
        return super()._check_active(quantum)

    def process(self, quantum: RenderQuantum) -> np.ndarray:
        data = self.buffer.data
        mask = self.window(quantum).astype(np.float64)
        rate = (self.buffer.sample_rate / quantum.sample_rate) \
            * self.playback_rate.compute(quantum) \
            * np.power(2.0, self.detune.compute(quantum) / 1200.0)

        step = rate * mask
        advanced = np.cumsum(step)
        positions = self._position + advanced - step
        self._position += float(advanced[-1])

        samples = np.interp(positions, np.arange(len(data)), data, right=0.0)
        return samples * mask


class DynamicsCompressorNode(AudioNode):
    """Soft-knee compressor; params are sampled once per block."""

    def __init__(self, context: "AudioContext"):
        super().__init__(context)
        self.threshold = AudioParam("threshold", -24.0, -100.0, 0.0)
        self.knee = AudioParam("knee", 30.0, 0.0, 40.0)
        self.ratio = AudioParam("ratio", 12.0, 1.0, 20.0)
        self.attack = AudioParam("attack", 0.003, 0.0, 1.0)
        self.release = AudioParam("release", 0.25, 0.0, 1.0)
        self.reduction = 0.0  # dB, <= 0

    def process(self, quantum: RenderQuantum) -> np.ndarray:
        output, self.reduction = compress(
            self.mix_inputs(quantum),
            self.reduction,
            float(self.threshold.compute(quantum)[0]),
            float(self.knee.compute(quantum)[0]),
            float(self.ratio.compute(quantum)[0]),
            float(self.attack.compute(quantum)[0]),
            float(self.release.compute(quantum)[0]),
            quantum.sample_rate,
        )
        return output


class ConvolverNode(AudioNode):
    """
    Convolution with an impulse response (overlap-add).

    The part of each block's response that spills past the block is
    carried into the following blocks, so reverb tails ring out after
    the input goes silent.
    """

    def __init__(self, context: "AudioContext", normalize: bool = True):
        super().__init__(context)
        self.normalize = normalize
        self._buffer: Optional[AudioBuffer] = None
        self._impulse: Optional[np.ndarray] = None
        self._spectra = {}
        self._tail = np.zeros(0, dtype=np.float64)

    @property
    def buffer(self) -> Optional[AudioBuffer]:
        return self._buffer

    @buffer.setter
    def buffer(self, buffer: Optional[AudioBuffer]):
        self._buffer = buffer
        self._spectra = {}
        if buffer is None:
            self._impulse = None
            self._tail = np.zeros(0, dtype=np.float64)
            return
        impulse = np.asarray(buffer.data, dtype=np.float64)
        if self.normalize:
            impulse = impulse * self._normalization_scale(impulse, buffer.sample_rate)
        self._impulse = impulse
        self._tail = np.zeros(max(0, len(impulse) - 1), dtype=np.float64)

    @staticmethod
    def _normalization_scale(impulse: np.ndarray, sample_rate: int) -> float:
        power = np.sqrt(np.sum(impulse * impulse) / max(1, len(impulse)))
        power = max(power, _MIN_POWER)
        scale = 1.0 / power
        scale *= db_to_linear(_GAIN_CALIBRATION_DB)
        scale *= _GAIN_CALIBRATION_SAMPLE_RATE / sample_rate
        return scale

    def _check_active(self, quantum: RenderQuantum) -> bool:
        if self._impulse is None:
            return False
        if super()._check_active(quantum):
            return True
        return bool(np.any(self._tail))

    def _spectrum(self, frames: int):
        if frames not in self._spectra:
            size = sp_fft.next_fast_len(frames + len(self._impulse) - 1, real=True)
            self._spectra[frames] = (size, sp_fft.rfft(self._impulse, size))
        return self._spectra[frames]

    def process(self, quantum: RenderQuantum) -> np.ndarray:
        frames = quantum.frames
        tail_length = len(self._tail)
        if super()._check_active(quantum):
            size, spectrum = self._spectrum(frames)
            full = sp_fft.irfft(sp_fft.rfft(self.mix_inputs(quantum), size) * spectrum, size)
            full = full[:frames + tail_length]
        else:
            full = np.zeros(frames + tail_length, dtype=np.float64)

        full[:tail_length] += self._tail
        self._tail = full[frames:].copy()
        return full[:frames]


class AudioDestinationNode(AudioNode):
    """Final output; sums everything connected to it."""

    def process(self, quantum: RenderQuantum) -> np.ndarray:
        return self.mix_inputs(quantum)
