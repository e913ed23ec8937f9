"""
Master bus topology built for each playback session.

    dry bus ──────────────────────┐
       └──> reverb ──> wet (25%) ──┴──> compressor ──> destination
"""
import logging
import weakref
from dataclasses import dataclass

from audio.context import AudioContext
from audio.dsp import reverb_impulse
from audio.nodes import AudioBuffer, ConvolverNode, DynamicsCompressorNode, GainNode

_LOGGER = logging.getLogger(__name__)

COMPRESSOR_THRESHOLD = -15.0  # dB
COMPRESSOR_KNEE = 10.0        # dB
COMPRESSOR_RATIO = 3.0
COMPRESSOR_ATTACK = 0.005     # seconds
COMPRESSOR_RELEASE = 0.2      # seconds

REVERB_WET_LEVEL = 0.25
REVERB_SECONDS = 1.8
REVERB_DECAY = 2.5

# One impulse per context lifetime
_impulses: "weakref.WeakKeyDictionary[AudioContext, AudioBuffer]" = weakref.WeakKeyDictionary()


def get_reverb_impulse(context: AudioContext) -> AudioBuffer:
    """Reverb impulse for a context (synthesized on first use, then reused)."""
    impulse = _impulses.get(context)
    if impulse is None:
        _LOGGER.debug("[AUDIO] Synthesizing %.1fs reverb impulse", REVERB_SECONDS)
        impulse = context.create_buffer(
            reverb_impulse(context.sample_rate, REVERB_SECONDS, REVERB_DECAY)
        )
        _impulses[context] = impulse
    return impulse


@dataclass
class AudioGraph:
    """
    Handle on one session's master bus.

    Attributes:
        context: Context the nodes belong to
        compressor: Final stage, feeds the destination
        reverb: Convolution reverb fed from the dry bus
        reverb_wet: Wet level into the compressor
        dry_bus: Where every note connects
    """
    context: AudioContext
    compressor: DynamicsCompressorNode
    reverb: ConvolverNode
    reverb_wet: GainNode
    dry_bus: GainNode

    @classmethod
    def build(cls, context: AudioContext) -> "AudioGraph":
        """Create and wire the master bus on a context."""
        compressor = context.create_dynamics_compressor()
        compressor.threshold.value = COMPRESSOR_THRESHOLD
        compressor.knee.value = COMPRESSOR_KNEE
        compressor.ratio.value = COMPRESSOR_RATIO
        compressor.attack.value = COMPRESSOR_ATTACK
        compressor.release.value = COMPRESSOR_RELEASE
        compressor.connect(context.destination)

        reverb = context.create_convolver()
        reverb.buffer = get_reverb_impulse(context)
        reverb_wet = context.create_gain()
        reverb_wet.gain.value = REVERB_WET_LEVEL
        reverb.connect(reverb_wet)
        reverb_wet.connect(compressor)

        dry_bus = context.create_gain()
        dry_bus.gain.value = 1.0
        dry_bus.connect(compressor)
        dry_bus.connect(reverb)

        return cls(context, compressor, reverb, reverb_wet, dry_bus)

    def disconnect(self):
        """Detach the whole bus from the destination."""
        for node in (self.dry_bus, self.reverb, self.reverb_wet, self.compressor):
            node.disconnect()
