"""
Note scheduler for score playback.

Turns notes into audio nodes started and stopped at absolute context
times. Every timing is computed up front from the per-measure tempo
table (MeasureTimeline), then handed to the context; the only way to
take a scheduled note back is to stop its nodes (cancel_all).
"""
import logging
from dataclasses import dataclass
from typing import Collection, List, Optional, Tuple

from audio.context import AudioContext
from audio.nodes import AudioNode, AudioScheduledSourceNode, GainNode
from audio.params import AudioParam
from audio.samples import SampleCache
from core.constants import DYNAMIC_GAIN, INST_GAIN, pitch_to_frequency
from core.models import Note, ScoreSnapshot
from core.signature import effective_signature

_LOGGER = logging.getLogger(__name__)

# Lead between play() and the first note, leaves the score view time to catch up
SCHEDULE_AHEAD = 0.12

# Sample envelope
SAMPLE_ATTACK_MAX = 0.06
SAMPLE_ATTACK_RATIO = 0.15
SAMPLE_RELEASE_MAX = 0.2
SAMPLE_RELEASE_RATIO = 0.3
SAMPLE_SUSTAIN_DECAY = 0.85
SAMPLE_STOP_PADDING = 0.1

# Warmth filter on samples
WARMTH_FREQUENCY = 6000.0
WARMTH_Q = 0.5

# Synth fallback envelope
SYNTH_ATTACK = 0.05
SYNTH_PEAK = 0.12
SYNTH_SUSTAIN = 0.1
SYNTH_RELEASE = 0.1
SYNTH_STOP_PADDING = 0.05

# Vibrato
VIBRATO_RATE = 5.2
VIBRATO_FADE_IN_MAX = 0.4
VIBRATO_FADE_IN_RATIO = 0.5
SAMPLE_VIBRATO_DEPTH = 12.0  # cents, on detune
SYNTH_VIBRATO_DEPTH = 3.0    # Hz, on frequency

SILENCE = 0.001


@dataclass(frozen=True)
class MeasureTimeline:
    """
    Per-measure timing from the start measure to the last played measure.

    Times are seconds relative to the first measure's downbeat. Each
    measure uses its own effective tempo and time signature.

    Attributes:
        first_measure: Measure playback starts at
        start_times: Start of each measure, first_measure onwards
        seconds_per_beat: Beat length of each measure
        beats: Beats in each measure (time signature numerator)
    """
    first_measure: int
    start_times: Tuple[float, ...]
    seconds_per_beat: Tuple[float, ...]
    beats: Tuple[int, ...]

    @classmethod
    def build(cls, snapshot: ScoreSnapshot, from_measure: int = 1,
              last_measure: Optional[int] = None) -> "MeasureTimeline":
        """
        Accumulate measure start times.

        Args:
            snapshot: Score being played
            from_measure: First measure played
            last_measure: Last measure played (default: last one with a playable note)
        """
        if last_measure is None:
            last_measure = snapshot.last_playable_measure(from_measure)

        start_times = []
        seconds_per_beat = []
        beats = []
        elapsed = 0.0
        for measure in range(from_measure, max(from_measure, last_measure) + 1):
            signature = effective_signature(measure, snapshot)
            start_times.append(elapsed)
            seconds_per_beat.append(signature.seconds_per_beat)
            beats.append(signature.beats_per_measure)
            elapsed += signature.beats_per_measure * signature.seconds_per_beat

        return cls(from_measure, tuple(start_times), tuple(seconds_per_beat), tuple(beats))

    @property
    def last_measure(self) -> int:
        return self.first_measure + len(self.start_times) - 1

    @property
    def total_duration(self) -> float:
        """Seconds from the first downbeat to the end of the last measure."""
        return self.start_times[-1] + self.measure_duration(self.last_measure)

    def _index(self, measure: int) -> int:
        index = measure - self.first_measure
        if not 0 <= index < len(self.start_times):
            raise KeyError(f"Measure {measure} is outside {self.first_measure}-{self.last_measure}")
        return index

    def measure_start(self, measure: int) -> float:
        return self.start_times[self._index(measure)]

    def measure_seconds_per_beat(self, measure: int) -> float:
        return self.seconds_per_beat[self._index(measure)]

    def measure_duration(self, measure: int) -> float:
        index = self._index(measure)
        return self.beats[index] * self.seconds_per_beat[index]

    def measure_at(self, elapsed: float) -> int:
        """Latest measure whose start is <= elapsed."""
        current = self.first_measure
        for index, start in enumerate(self.start_times):
            if elapsed >= start:
                current = self.first_measure + index
            else:
                break
        return current

    def note_offset(self, note: Note) -> float:
        """Seconds from the first downbeat to the note's onset."""
        index = self._index(note.measure)
        return self.start_times[index] + (note.beat - 1) * self.seconds_per_beat[index]

    def note_duration(self, note: Note) -> float:
        return note.beats * self.measure_seconds_per_beat(note.measure)

    def note_start(self, note: Note, session_start: float,
                   schedule_ahead: float = SCHEDULE_AHEAD) -> float:
        """Absolute context time of the note's onset."""
        return session_start + schedule_ahead + self.note_offset(note)


def is_audible(note: Note, solo: Optional[str], muted: Collection[str]) -> bool:
    """Solo wins over mute: with a solo set, only (and all of) its notes play."""
    if solo:
        return note.instrument_id == solo
    return note.instrument_id not in muted


def note_gain(note: Note) -> float:
    """Peak gain for a note (dynamic x instrument balance)."""
    return DYNAMIC_GAIN.get(note.dynamic, 1.0) * INST_GAIN.get(note.instrument_id, 1.0)


class NoteScheduler:
    """
    Schedules notes onto a dry bus.

    Every source it starts (samples, oscillators, vibrato LFOs) is kept
    in scheduled_nodes so the session can silence them all at once.
    """

    def __init__(self, context: AudioContext, dry_bus: GainNode,
                 samples: Optional[SampleCache] = None):
        """
        Args:
            context: Context to create nodes on
            dry_bus: Bus every note connects to
            samples: Sample cache (None = always synthesize)
        """
        self.context = context
        self.dry_bus = dry_bus
        self.samples = samples
        self.scheduled_nodes: List[AudioScheduledSourceNode] = []

    def schedule_score(self,
                       snapshot: ScoreSnapshot,
                       timeline: MeasureTimeline,
                       session_start: float,
                       schedule_ahead: float = SCHEDULE_AHEAD,
                       solo: Optional[str] = None,
                       muted: Collection[str] = ()) -> int:
        """
        Schedule every audible note of the timeline's span.

        Returns:
            Number of notes scheduled
        """
        count = 0
        for note in snapshot.playable_notes(timeline.first_measure):
            if note.measure > timeline.last_measure or not is_audible(note, solo, muted):
                continue
            self.schedule(
                note,
                timeline.note_start(note, session_start, schedule_ahead),
                timeline.note_duration(note),
            )
            count += 1
        return count

    def schedule(self, note: Note, start_time: float, duration: float):
        """
        Schedule one note, from its sample if cached, else synthesized.

        Args:
            note: Note to play
            start_time: Absolute context time of the onset
            duration: Nominal length in seconds
        """
        sample = self.samples.get(note.instrument_id, note.pitch) if self.samples else None
        if sample is not None:
            self._schedule_sample(note, sample, start_time, duration)
        else:
            self._schedule_synth(note, start_time, duration)

    def _schedule_sample(self, note: Note, sample, start: float, duration: float):
        ctx = self.context
        total = note_gain(note)

        source = ctx.create_buffer_source()
        source.buffer = sample

        warmth = ctx.create_biquad_filter("lowpass")
        warmth.frequency.value = WARMTH_FREQUENCY
        warmth.Q.value = WARMTH_Q

        gain = ctx.create_gain()
        source.connect(warmth)
        warmth.connect(gain)
        gain.connect(self.dry_bus)

        # Fast attack, short hold, gentle decay to 85%, then release
        attack = min(SAMPLE_ATTACK_MAX, duration * SAMPLE_ATTACK_RATIO)
        release = min(SAMPLE_RELEASE_MAX, duration * SAMPLE_RELEASE_RATIO)
        envelope = gain.gain
        envelope.set_value_at_time(SILENCE, start)
        envelope.exponential_ramp_to_value_at_time(total, start + attack)
        envelope.set_value_at_time(total, start + attack)
        envelope.exponential_ramp_to_value_at_time(
            max(total * SAMPLE_SUSTAIN_DECAY, SILENCE), start + duration - release
        )
        envelope.exponential_ramp_to_value_at_time(SILENCE, start + duration)

        stop_at = start + duration + SAMPLE_STOP_PADDING
        source.start(start)
        source.stop(stop_at)
        self.scheduled_nodes.append(source)
        if note.vibrato:
            self._add_vibrato(source.detune, SAMPLE_VIBRATO_DEPTH, start, duration, stop_at)
        _LOGGER.debug("[PLAYBACK] %s %s sample at %.3fs for %.3fs",
                      note.instrument_id, note.pitch, start, duration)

    def _schedule_synth(self, note: Note, start: float, duration: float):
        ctx = self.context
        total = note_gain(note)

        osc = ctx.create_oscillator("sine")
        osc.frequency.value = pitch_to_frequency(note.pitch)

        gain = ctx.create_gain()
        osc.connect(gain)
        gain.connect(self.dry_bus)

        envelope = gain.gain
        envelope.set_value_at_time(SILENCE, start)
        envelope.exponential_ramp_to_value_at_time(total * SYNTH_PEAK, start + SYNTH_ATTACK)
        envelope.set_value_at_time(
            total * SYNTH_SUSTAIN, max(start + duration - SYNTH_RELEASE, start + SYNTH_ATTACK)
        )
        envelope.exponential_ramp_to_value_at_time(SILENCE, start + duration)

        stop_at = start + duration + SYNTH_STOP_PADDING
        osc.start(start)
        osc.stop(stop_at)
        self.scheduled_nodes.append(osc)
        if note.vibrato:
            self._add_vibrato(osc.frequency, SYNTH_VIBRATO_DEPTH, start, duration, stop_at)
        _LOGGER.debug("[PLAYBACK] %s %s synthesized at %.3fs for %.3fs",
                      note.instrument_id, note.pitch, start, duration)

    def _add_vibrato(self, target: AudioParam, depth: float,
                     start: float, duration: float, stop_at: float):
        """LFO on target whose depth fades in from zero, never on at the onset."""
        lfo = self.context.create_oscillator("sine")
        lfo.frequency.value = VIBRATO_RATE

        depth_gain = self.context.create_gain()
        depth_gain.gain.set_value_at_time(0.0, start)
        depth_gain.gain.linear_ramp_to_value_at_time(
            depth, start + min(VIBRATO_FADE_IN_MAX, duration * VIBRATO_FADE_IN_RATIO)
        )
        lfo.connect(depth_gain)
        depth_gain.connect(target)

        lfo.start(start)
        lfo.stop(stop_at)
        self.scheduled_nodes.append(lfo)

    def cancel_all(self):
        """Silence every scheduled node now, whatever its schedule."""
        for node in self.scheduled_nodes:
            node.stop()
        _LOGGER.debug("[PLAYBACK] Cancelled %d node(s)", len(self.scheduled_nodes))
        self.scheduled_nodes.clear()

    def release_finished(self) -> int:
        """
        Detach the chains of sources that can no longer sound.

        Returns:
            Number of sources released
        """
        finished = [node for node in self.scheduled_nodes if node.finished]
        for node in finished:
            self._release(node)
        self.scheduled_nodes[:] = [node for node in self.scheduled_nodes if not node.finished]
        return len(finished)

    def _release(self, node: AudioNode):
        # Stops at the bus and at anything still fed by a live voice
        downstream = [output for output in node.outputs if isinstance(output, AudioNode)]
        node.disconnect()
        for output in downstream:
            if output is not self.dry_bus and not output.inputs:
                self._release(output)
