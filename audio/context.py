"""
Audio context: the clock and node factory every playback session runs on.

The clock is derived from frames rendered, so it is monotonic and can't
be paused or rewound. Once resume() opens the output stream, the device
callback pulls the graph block by block and the clock free-runs.

OfflineAudioContext renders on demand without a device (tests, WAV export).
"""
import io
import logging
import threading
from typing import Optional, Union

import numpy as np
import soundfile as sf

from audio.dsp import clip_audio, stereo_from_mono
from audio.nodes import (
    AudioBuffer,
    AudioBufferSourceNode,
    AudioDestinationNode,
    BiquadFilterNode,
    ConvolverNode,
    DynamicsCompressorNode,
    GainNode,
    OscillatorNode,
    RenderQuantum,
)

_LOGGER = logging.getLogger(__name__)


class AudioDeviceError(RuntimeError):
    """The audio output device could not be opened."""


class AudioContext:
    """
    Real-time audio context backed by a sounddevice output stream.

    Graph mutation (scheduling, connecting) and rendering both happen
    under `lock`, so the device callback never sees a half-built graph.
    """

    def __init__(self,
                 sample_rate: int = 44100,
                 buffer_size: int = 512,
                 output_device: Optional[Union[str, int]] = None):
        """
        Args:
            sample_rate: Audio sample rate (Hz)
            buffer_size: Frames per device callback
            output_device: sounddevice device name/index (None or "Default" = system default)
        """
        self.sample_rate = sample_rate
        self.buffer_size = buffer_size
        self.output_device = output_device
        self.lock = threading.RLock()
        self.destination = AudioDestinationNode(self)
        self.closed = False

        self._frames_rendered = 0
        self._block_index = 0
        self._stream = None

    @property
    def current_time(self) -> float:
        """Seconds of audio rendered so far."""
        return self._frames_rendered / self.sample_rate

    # Node factories

    def create_gain(self) -> GainNode:
        return GainNode(self)

    def create_biquad_filter(self, filter_type: str = "lowpass") -> BiquadFilterNode:
        return BiquadFilterNode(self, filter_type)

    def create_oscillator(self, wave_type: str = "sine") -> OscillatorNode:
        return OscillatorNode(self, wave_type)

    def create_buffer_source(self) -> AudioBufferSourceNode:
        return AudioBufferSourceNode(self)

    def create_dynamics_compressor(self) -> DynamicsCompressorNode:
        return DynamicsCompressorNode(self)

    def create_convolver(self) -> ConvolverNode:
        return ConvolverNode(self)

    def create_buffer(self, data: np.ndarray, sample_rate: Optional[int] = None) -> AudioBuffer:
        """Wrap mono samples in an AudioBuffer (defaults to the context rate)."""
        return AudioBuffer(np.asarray(data, dtype=np.float32), sample_rate or self.sample_rate)

    def decode_audio_data(self, data: bytes) -> AudioBuffer:
        """
        Decode encoded audio (mp3/ogg/flac/wav) into a mono buffer.

        Blocking; run it off the event loop.

        Raises:
            soundfile.LibsndfileError: If the bytes can't be decoded
        """
        samples, rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
        mono = samples.mean(axis=1).astype(np.float32)
        return AudioBuffer(mono, rate)

    # Rendering

    def render(self, frames: int) -> np.ndarray:
        """
        Render the next block of the graph and advance the clock.

        Args:
            frames: Number of frames to render

        Returns:
            Stereo float32 block (frames x 2), clipped to [-1, 1]
        """
        with self.lock:
            quantum = RenderQuantum(self._block_index, self._frames_rendered, frames, self.sample_rate)
            mono = self.destination.pull(quantum)
            self._block_index += 1
            self._frames_rendered += frames
        return clip_audio(stereo_from_mono(mono)).astype(np.float32)

    def _callback(self, outdata, frames, time_info, status):
        """Sounddevice callback for audio output."""
        if status:
            _LOGGER.debug("[AUDIO] Stream status: %s", status)
        outdata[:] = self.render(frames)

    def resume(self):
        """
        Open and start the output stream (no-op if already running).

        Raises:
            AudioDeviceError: If the device can't be opened
        """
        if self._stream is not None:
            return
        if self.closed:
            raise AudioDeviceError("Audio context is closed")

        device = None if self.output_device in (None, "Default") else self.output_device
        try:
            import sounddevice as sd

            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                blocksize=self.buffer_size,
                channels=2,
                dtype="float32",
                device=device,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            raise AudioDeviceError(f"Failed to open audio output ({device or 'default'}): {e}") from e

        self._stream = stream
        _LOGGER.info("[AUDIO] Output stream started: %d Hz, %d frames/buffer",
                     self.sample_rate, self.buffer_size)

    def close(self):
        """Stop the output stream and release the device."""
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            finally:
                self._stream = None
                _LOGGER.info("[AUDIO] Output stream closed")
        self.closed = True


class OfflineAudioContext(AudioContext):
    """Context rendered on demand; the clock only moves when render() is called."""

    def resume(self):
        if self.closed:
            raise AudioDeviceError("Audio context is closed")

    def close(self):
        self.closed = True

    def render_seconds(self, seconds: float) -> np.ndarray:
        """
        Render `seconds` of audio in buffer_size blocks.

        Returns:
            Stereo float32 array (frames x 2)
        """
        total = int(round(seconds * self.sample_rate))
        blocks = []
        while total > 0:
            frames = min(self.buffer_size, total)
            blocks.append(self.render(frames))
            total -= frames
        if not blocks:
            return np.zeros((0, 2), dtype=np.float32)
        return np.concatenate(blocks)
