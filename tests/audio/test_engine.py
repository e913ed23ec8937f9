import asyncio
import logging

import numpy as np
import pytest

from audio.context import AudioDeviceError, OfflineAudioContext
from audio.engine import PlaybackEngine, PlaybackState, render_snapshot
from audio.nodes import AudioBufferSourceNode, OscillatorNode
from audio.playhead import PlaybackTick
from audio.samples import SampleCache
from core.models import Note


def _notes(*specs):
    return [
        Note(f"n{i}", instrument, pitch, measure, beat, "quarter")
        for i, (instrument, pitch, measure, beat) in enumerate(specs)
    ]


@pytest.fixture
def engine(offline_context, counting_source):
    engine = PlaybackEngine(offline_context, SampleCache(counting_source))
    yield engine
    engine.close()


@pytest.fixture
def two_bars(snapshot_factory):
    return snapshot_factory(
        notes=_notes(("violin1", "D5", 1, 1), ("cello", "D3", 1, 3), ("viola", "A3", 2, 1)),
        tempo=120,
    )


def test_stop_when_idle_is_a_noop(engine):
    ticks = []
    engine.on_playback_tick = ticks.append

    engine.stop()
    engine.stop()

    assert engine.state == PlaybackState.IDLE
    assert not engine.is_playing
    assert ticks == []


@pytest.mark.asyncio
async def test_play_schedules_after_preload(engine, two_bars, counting_source):
    session = await engine.play(two_bars)

    assert engine.state == PlaybackState.PLAYING
    assert engine.session is session
    assert sum(counting_source.calls.values()) == 3
    assert len(session.scheduled_nodes) == 3
    assert all(isinstance(n, AudioBufferSourceNode) for n in session.scheduled_nodes)
    assert sorted(n.start_time for n in session.scheduled_nodes) == pytest.approx(
        [0.12, 1.12, 2.12], abs=1e-3)


@pytest.mark.asyncio
async def test_missing_sample_falls_back_to_synthesis(engine, two_bars, counting_source):
    counting_source.missing = {"cello/D3"}
    session = await engine.play(two_bars)

    kinds = {type(n) for n in session.scheduled_nodes}
    assert kinds == {AudioBufferSourceNode, OscillatorNode}
    assert engine.state == PlaybackState.PLAYING


@pytest.mark.asyncio
async def test_second_play_replaces_first(engine, two_bars, offline_context):
    first = await engine.play(two_bars)
    first_nodes = first.scheduled_nodes
    second = await engine.play(two_bars, from_measure=2)

    assert engine.session is second
    assert first.state == PlaybackState.IDLE
    assert all(node.cancelled for node in first_nodes)
    assert len(second.scheduled_nodes) == 1
    assert not any(node.cancelled for node in second.scheduled_nodes)
    # Only the newest master bus reaches the output
    assert offline_context.destination.inputs == [second.graph.compressor]


@pytest.mark.asyncio
async def test_play_while_loading_supersedes(engine, two_bars, counting_source):
    counting_source.gate = asyncio.Event()
    ticks = []
    engine.on_playback_tick = ticks.append

    first = asyncio.ensure_future(engine.play(two_bars))
    await asyncio.sleep(0)
    assert engine.state == PlaybackState.LOADING

    second = asyncio.ensure_future(engine.play(two_bars))
    await asyncio.sleep(0)
    counting_source.gate.set()

    assert await first is None
    session = await second
    assert engine.session is session
    assert len(session.scheduled_nodes) == 3
    assert sum(counting_source.calls.values()) == 3
    assert PlaybackTick(stopped=True) in ticks


@pytest.mark.asyncio
async def test_stop_cancels_nodes_and_reports(engine, two_bars, offline_context):
    ticks = []
    engine.on_playback_tick = ticks.append
    session = await engine.play(two_bars)
    nodes = session.scheduled_nodes

    engine.stop()
    engine.stop()

    assert engine.state == PlaybackState.IDLE
    assert engine.session is None
    assert all(node.cancelled for node in nodes)
    assert ticks[-1] == PlaybackTick(stopped=True)
    assert ticks.count(PlaybackTick(stopped=True)) == 1
    assert session.playhead.stopped


@pytest.mark.asyncio
async def test_playhead_reports_position(engine, two_bars, offline_context):
    measures, ticks = [], []
    engine.on_measure_change = measures.append
    engine.on_playback_tick = ticks.append
    await engine.play(two_bars)

    offline_context.render_seconds(1.0)
    await asyncio.sleep(0.05)
    offline_context.render_seconds(1.5)
    await asyncio.sleep(0.05)

    assert measures == [1, 2]
    latest = ticks[-1]
    assert latest.measure == 2
    assert latest.beat_fraction == pytest.approx(0.25, abs=1e-3)


@pytest.mark.asyncio
async def test_natural_end_resets_to_start_measure(engine, two_bars, offline_context):
    measures, ticks = [], []
    engine.on_measure_change = measures.append
    engine.on_playback_tick = ticks.append
    await engine.play(two_bars)

    offline_context.render_seconds(4.2)
    await asyncio.sleep(0.05)

    assert engine.state == PlaybackState.IDLE
    assert ticks[-1] == PlaybackTick(stopped=True)
    assert measures[-1] == 1


@pytest.mark.asyncio
async def test_stop_from_inside_tick_callback(engine, two_bars):
    ticks = []

    def on_tick(tick):
        ticks.append(tick)
        engine.stop()

    engine.on_playback_tick = on_tick
    session = await engine.play(two_bars)
    await asyncio.sleep(0.05)

    assert engine.state == PlaybackState.IDLE
    assert ticks[-1] == PlaybackTick(stopped=True)
    assert len([t for t in ticks if not t.stopped]) == 1
    assert session.scheduler.scheduled_nodes == []


@pytest.mark.asyncio
async def test_callback_errors_are_logged_not_raised(engine, two_bars, caplog):
    def broken(_):
        raise RuntimeError("ui went away")

    engine.on_measure_change = broken
    engine.on_playback_tick = broken
    with caplog.at_level(logging.ERROR, logger="audio.engine"):
        await engine.play(two_bars)
        await asyncio.sleep(0.05)
        engine.stop()

    assert "ui went away" in caplog.text
    assert engine.state == PlaybackState.IDLE


class _DeadDeviceContext(OfflineAudioContext):
    def resume(self):
        raise AudioDeviceError("no output device")


@pytest.mark.asyncio
async def test_device_failure_leaves_engine_idle(two_bars, counting_source, caplog):
    engine = PlaybackEngine(_DeadDeviceContext(), SampleCache(counting_source))
    with caplog.at_level(logging.ERROR, logger="audio.engine"):
        assert await engine.play(two_bars) is None

    assert engine.state == PlaybackState.IDLE
    assert "no output device" in caplog.text
    assert sum(counting_source.calls.values()) == 0


@pytest.mark.asyncio
async def test_mute_and_solo_apply_to_next_play(engine, two_bars):
    assert engine.toggle_mute("cello") is True
    session = await engine.play(two_bars)
    assert len(session.scheduled_nodes) == 2

    assert engine.toggle_solo("cello") == "cello"
    session = await engine.play(two_bars)
    assert len(session.scheduled_nodes) == 1

    assert engine.toggle_solo("cello") is None
    assert engine.toggle_mute("cello") is False
    session = await engine.play(two_bars)
    assert len(session.scheduled_nodes) == 3


def test_render_snapshot_synthesizes_without_samples(two_bars):
    audio = render_snapshot(two_bars, sample_rate=22050, tail=0.5)

    assert audio.ndim == 2 and audio.shape[1] == 2
    assert len(audio) == pytest.approx((0.12 + 4.0 + 0.5) * 22050, abs=2)
    assert np.max(np.abs(audio)) > 0.01
    assert np.max(np.abs(audio)) <= 1.0


@pytest.mark.asyncio
async def test_spent_voices_are_released_while_playing(engine, two_bars, offline_context):
    session = await engine.play(two_bars)
    assert len(session.graph.dry_bus.inputs) == 3

    offline_context.render_seconds(1.5)
    await asyncio.sleep(0.05)

    # The first note stopped at 0.72s, the others are still scheduled
    assert len(session.scheduled_nodes) == 2
    assert len(session.graph.dry_bus.inputs) == 2
    assert engine.state == PlaybackState.PLAYING
