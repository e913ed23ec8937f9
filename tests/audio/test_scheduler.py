import numpy as np
import pytest

from audio.graph import AudioGraph
from audio.nodes import AudioBufferSourceNode, OscillatorNode
from audio.params import EXPONENTIAL, LINEAR, SET
from audio.samples import SampleCache
from audio.scheduler import (
    SCHEDULE_AHEAD,
    MeasureTimeline,
    NoteScheduler,
    is_audible,
    note_gain,
)
from core.models import Note, SignatureOverride
from core.test_data import create_test_snapshot_with_changing_measures


def _note(measure=1, beat=1.0, duration="quarter", instrument_id="violin1",
          pitch="A4", dynamic="mf", vibrato=False, note_id="n"):
    return Note(note_id, instrument_id, pitch, measure, beat, duration,
                dynamic=dynamic, vibrato=vibrato)


def _scheduler(context, samples=None):
    graph = AudioGraph.build(context)
    return NoteScheduler(context, graph.dry_bus, samples), graph


def test_timeline_follows_per_measure_tempo_and_meter():
    snapshot = create_test_snapshot_with_changing_measures()
    timeline = MeasureTimeline.build(snapshot, 1)

    # 3/4 @ 60, 4/4 @ 120, 4/4 @ 120, 6/8 @ 240
    assert timeline.start_times == pytest.approx((0.0, 3.0, 5.0, 7.0))
    assert timeline.beats == (3, 4, 4, 6)
    assert timeline.total_duration == pytest.approx(8.5)
    for measure in range(1, 4):
        expected = timeline.beats[measure - 1] * timeline.seconds_per_beat[measure - 1]
        assert timeline.measure_start(measure + 1) - timeline.measure_start(measure) == pytest.approx(expected)


def test_timeline_is_strictly_increasing(snapshot_factory):
    snapshot = snapshot_factory(
        notes=[_note(measure=9)],
        overrides=[SignatureOverride(2, time_signature="1/4"), SignatureOverride(5, tempo=300),
                   SignatureOverride(7, time_signature="7/8", tempo=20)],
        total_measures=9,
    )
    timeline = MeasureTimeline.build(snapshot, 1)
    assert timeline.last_measure == 9
    assert all(b > a for a, b in zip(timeline.start_times, timeline.start_times[1:]))


def test_timeline_starts_at_from_measure(snapshot_factory):
    snapshot = snapshot_factory(notes=[_note(measure=2), _note(measure=6)],
                                overrides=[SignatureOverride(4, tempo=120)])
    timeline = MeasureTimeline.build(snapshot, 4)
    assert timeline.first_measure == 4
    assert timeline.last_measure == 6
    assert timeline.start_times == pytest.approx((0.0, 2.0, 4.0))
    with pytest.raises(KeyError):
        timeline.measure_start(3)


def test_trailing_empty_measures_are_not_played(snapshot_factory):
    snapshot = snapshot_factory(notes=[_note(measure=2)], total_measures=32)
    assert MeasureTimeline.build(snapshot, 1).last_measure == 2


def test_measure_at_picks_latest_started_measure():
    timeline = MeasureTimeline.build(create_test_snapshot_with_changing_measures(), 1)
    assert timeline.measure_at(0.0) == 1
    assert timeline.measure_at(2.999) == 1
    assert timeline.measure_at(3.0) == 2
    assert timeline.measure_at(7.5) == 4
    assert timeline.measure_at(100.0) == 4


def test_quarter_at_beat_two_and_a_half(snapshot_factory):
    note = _note(beat=2.5)
    timeline = MeasureTimeline.build(snapshot_factory(notes=[note], tempo=120), 1)
    session_start = 3.25

    assert timeline.note_start(note, session_start) == pytest.approx(
        session_start + SCHEDULE_AHEAD + 0.75, abs=1e-3)
    assert timeline.note_duration(note) == pytest.approx(0.5, abs=1e-3)


def test_solo_takes_precedence_over_mute():
    violin, cello = _note(instrument_id="violin1"), _note(instrument_id="cello")
    assert is_audible(violin, None, set())
    assert not is_audible(violin, None, {"violin1"})
    assert is_audible(violin, "violin1", {"violin1"})
    assert not is_audible(cello, "violin1", set())


def test_schedule_score_filters_and_anchors(offline_context, snapshot_factory):
    notes = [
        _note(instrument_id="violin1", note_id="v"),
        _note(instrument_id="cello", pitch="D3", note_id="c"),
        _note(instrument_id="viola", pitch="A3", beat=3, note_id="a"),
    ]
    snapshot = snapshot_factory(notes=notes, tempo=120)
    scheduler, _ = _scheduler(offline_context)
    timeline = MeasureTimeline.build(snapshot, 1)

    count = scheduler.schedule_score(snapshot, timeline, 1.0, SCHEDULE_AHEAD, muted={"cello"})
    assert count == 2
    starts = sorted(node.start_time for node in scheduler.scheduled_nodes)
    assert starts == pytest.approx([1.12, 2.12], abs=1e-3)


def test_synth_fallback_envelope(offline_context):
    scheduler, graph = _scheduler(offline_context)
    note = _note(pitch="A4", dynamic="f", instrument_id="cello")
    scheduler.schedule(note, 1.0, 2.0)

    (osc,) = scheduler.scheduled_nodes
    assert isinstance(osc, OscillatorNode)
    assert osc.frequency.value == pytest.approx(440.0)
    assert osc.start_time == pytest.approx(1.0)
    assert osc.stop_time == pytest.approx(3.05)

    (gain,) = osc.outputs
    assert gain in graph.dry_bus.inputs
    total = note_gain(note)
    assert [e.kind for e in gain.gain.events] == [SET, EXPONENTIAL, SET, EXPONENTIAL]
    assert [e.time for e in gain.gain.events] == pytest.approx([1.0, 1.05, 2.9, 3.0])
    assert gain.gain.events[1].value == pytest.approx(total * 0.12)
    assert gain.gain.events[2].value == pytest.approx(total * 0.1)
    assert gain.gain.events[3].value == pytest.approx(0.001)


def test_sample_path_envelope_and_warmth(offline_context):
    samples = SampleCache(source=None)
    samples._cache[SampleCache.cache_key("viola", "D4")] = offline_context.create_buffer(
        np.zeros(44100, dtype=np.float32))
    scheduler, graph = _scheduler(offline_context, samples)
    note = _note(instrument_id="viola", pitch="D4", dynamic="p")
    scheduler.schedule(note, 2.0, 1.0)

    (source,) = scheduler.scheduled_nodes
    assert isinstance(source, AudioBufferSourceNode)
    assert source.stop_time == pytest.approx(3.1)

    (warmth,) = source.outputs
    assert warmth.type == "lowpass"
    assert warmth.frequency.value == pytest.approx(6000.0)
    assert warmth.Q.value == pytest.approx(0.5)

    (gain,) = warmth.outputs
    total = note_gain(note)
    events = gain.gain.events
    assert [e.kind for e in events] == [SET, EXPONENTIAL, SET, EXPONENTIAL, EXPONENTIAL]
    assert [e.time for e in events] == pytest.approx([2.0, 2.06, 2.06, 2.8, 3.0])
    assert events[1].value == pytest.approx(total)
    assert events[3].value == pytest.approx(total * 0.85)
    assert events[4].value == pytest.approx(0.001)


def test_short_sample_note_scales_attack_and_release(offline_context):
    samples = SampleCache(source=None)
    samples._cache[SampleCache.cache_key("violin1", "E5")] = offline_context.create_buffer(
        np.zeros(4410, dtype=np.float32))
    scheduler, _ = _scheduler(offline_context, samples)
    scheduler.schedule(_note(pitch="E5"), 0.0, 0.2)

    gain = scheduler.scheduled_nodes[0].outputs[0].outputs[0]
    assert [e.time for e in gain.gain.events] == pytest.approx([0.0, 0.03, 0.03, 0.14, 0.2])


def test_no_vibrato_means_no_modulator(offline_context):
    scheduler, _ = _scheduler(offline_context)
    scheduler.schedule(_note(vibrato=False), 0.5, 1.0)

    (osc,) = scheduler.scheduled_nodes
    assert osc.frequency.inputs == []
    assert osc.detune.inputs == []


def test_synth_vibrato_fades_in_from_zero(offline_context):
    scheduler, _ = _scheduler(offline_context)
    scheduler.schedule(_note(vibrato=True), 0.5, 2.0)

    osc, lfo = scheduler.scheduled_nodes
    assert lfo.frequency.value == pytest.approx(5.2)
    assert lfo.stop_time == pytest.approx(osc.stop_time)

    (depth,) = lfo.outputs
    assert depth in osc.frequency.inputs
    first, ramp = depth.gain.events
    assert (first.kind, first.value, first.time) == (SET, 0.0, 0.5)
    assert ramp.kind == LINEAR
    assert ramp.value == pytest.approx(3.0)
    assert ramp.time == pytest.approx(0.9)
    assert depth.gain.value_at(0.5) == 0.0


def test_sample_vibrato_drives_detune(offline_context):
    samples = SampleCache(source=None)
    samples._cache[SampleCache.cache_key("cello", "D3")] = offline_context.create_buffer(
        np.zeros(44100, dtype=np.float32))
    scheduler, _ = _scheduler(offline_context, samples)
    scheduler.schedule(_note(instrument_id="cello", pitch="D3", vibrato=True), 0.0, 0.5)

    source, lfo = scheduler.scheduled_nodes
    (depth,) = lfo.outputs
    assert depth in source.detune.inputs
    assert depth.gain.events[1].value == pytest.approx(12.0)
    # Short note: depth reaches full at half the note, not 400 ms
    assert depth.gain.events[1].time == pytest.approx(0.25)


def test_cancel_all_silences_future_notes(offline_context, snapshot_factory):
    snapshot = snapshot_factory(notes=[_note(), _note(beat=2, note_id="m", vibrato=True)])
    scheduler, _ = _scheduler(offline_context)
    scheduler.schedule_score(snapshot, MeasureTimeline.build(snapshot, 1), 0.0)
    nodes = list(scheduler.scheduled_nodes)

    scheduler.cancel_all()
    assert scheduler.scheduled_nodes == []
    assert all(node.cancelled for node in nodes)
    assert not np.any(offline_context.render_seconds(2.0))


def test_scheduled_notes_are_audible(offline_context, snapshot_factory):
    snapshot = snapshot_factory(notes=[_note(dynamic="ff")], tempo=120)
    scheduler, _ = _scheduler(offline_context)
    scheduler.schedule_score(snapshot, MeasureTimeline.build(snapshot, 1), 0.0)

    audio = offline_context.render_seconds(1.0)[:, 0]
    onset = int(SCHEDULE_AHEAD * 44100)
    assert np.max(np.abs(audio[:onset - 1])) < 1e-9
    assert np.max(np.abs(audio[onset:onset + 22050])) > 0.01


def test_release_finished_detaches_spent_voices(offline_context):
    scheduler, graph = _scheduler(offline_context)
    scheduler.schedule(_note(note_id="a", vibrato=True), 0.0, 0.2)
    scheduler.schedule(_note(note_id="b", pitch="E5"), 1.0, 0.5)
    assert len(graph.dry_bus.inputs) == 2

    assert scheduler.release_finished() == 0
    offline_context.render_seconds(0.5)

    # Synth voice and its vibrato LFO both stopped at 0.25s
    assert scheduler.release_finished() == 2
    (later,) = scheduler.scheduled_nodes
    assert later.start_time == pytest.approx(1.0)
    (gain,) = graph.dry_bus.inputs
    assert gain.inputs == [later]
    assert scheduler.release_finished() == 0
