"""
Score playback engine.

Architecture:
- Audio: an AudioContext renders the node graph (device callback thread)
- Control: play()/stop() run on the asyncio loop; graph changes take the
  context lock so the callback never renders a half-scheduled score
- UI: measure-change and tick callbacks, invoked from the playhead loop

Session lifecycle: idle -> loading (sample preload) -> playing -> idle.
A new play() always stops the previous session first, so two sessions'
notes never sound together.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Collection, Dict, List, Optional, Set

import numpy as np

from audio.context import AudioContext, AudioDeviceError, OfflineAudioContext
from audio.graph import AudioGraph
from audio.nodes import AudioScheduledSourceNode
from audio.playhead import PlaybackTick, PlayheadReporter
from audio.samples import SampleCache, create_sample_source
from audio.scheduler import SCHEDULE_AHEAD, MeasureTimeline, NoteScheduler
from core.models import ScoreSnapshot
from core.settings import DEFAULT_SETTINGS, merge_settings

_LOGGER = logging.getLogger(__name__)


class PlaybackState(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"


@dataclass
class PlaybackSession:
    """
    One play() call, from preload to teardown.

    Attributes:
        snapshot: Score being played
        start_measure: Measure playback started from
        state: LOADING until notes are scheduled, then PLAYING
        start_time: Context time scheduling was anchored to
        timeline: Measure timing (set once playing)
        graph: Master bus (set once playing)
        scheduler: Owns every scheduled node (set once playing)
        playhead: Polling task (set once playing)
    """
    snapshot: ScoreSnapshot
    start_measure: int
    state: PlaybackState = PlaybackState.LOADING
    start_time: float = 0.0
    timeline: Optional[MeasureTimeline] = None
    graph: Optional[AudioGraph] = None
    scheduler: Optional[NoteScheduler] = None
    playhead: Optional[PlayheadReporter] = None

    @property
    def scheduled_nodes(self) -> List[AudioScheduledSourceNode]:
        if self.scheduler is None:
            return []
        return list(self.scheduler.scheduled_nodes)

    def teardown(self):
        """Silence every node and stop the playhead."""
        if self.scheduler is not None:
            self.scheduler.cancel_all()
        if self.playhead is not None:
            self.playhead.cancel()
        self.state = PlaybackState.IDLE


class PlaybackEngine:
    """
    Plays score snapshots and reports the playhead.

    Failures never reach the caller: missing samples fall back to
    synthesis, callback errors are logged, and a device that won't open
    leaves the engine idle.
    """

    def __init__(self,
                 context: Optional[AudioContext] = None,
                 samples: Optional[SampleCache] = None,
                 settings: Optional[Dict[str, Any]] = None):
        """
        Args:
            context: Audio context (default: real-time context from settings)
            samples: Sample cache (default: cache over the configured source)
            settings: Settings dictionary (default: built-in defaults)
        """
        self.settings = merge_settings(DEFAULT_SETTINGS, settings or {})
        audio = self.settings["audio"]
        playback = self.settings["playback"]

        self.context = context or AudioContext(
            sample_rate=audio["sample_rate"],
            buffer_size=audio["buffer_size"],
            output_device=audio["output_device"],
        )
        self.samples = samples if samples is not None else SampleCache(create_sample_source(self.settings))
        self.schedule_ahead = float(playback["schedule_ahead"])
        self.tick_rate = float(playback["tick_rate"])

        self.muted_instruments: Set[str] = set()
        self.solo_instrument: Optional[str] = None

        self.on_measure_change: Optional[Callable[[int], None]] = None
        self.on_playback_tick: Optional[Callable[[PlaybackTick], None]] = None

        self._session: Optional[PlaybackSession] = None
        self._graph: Optional[AudioGraph] = None

    @property
    def session(self) -> Optional[PlaybackSession]:
        return self._session

    @property
    def state(self) -> PlaybackState:
        if self._session is None:
            return PlaybackState.IDLE
        return self._session.state

    @property
    def is_playing(self) -> bool:
        """True while loading or playing."""
        return self._session is not None

    def toggle_mute(self, instrument_id: str) -> bool:
        """
        Mute or unmute an instrument (applies from the next play()).

        Returns:
            True if the instrument is now muted
        """
        if instrument_id in self.muted_instruments:
            self.muted_instruments.discard(instrument_id)
            return False
        self.muted_instruments.add(instrument_id)
        return True

    def toggle_solo(self, instrument_id: str) -> Optional[str]:
        """
        Solo an instrument, or clear the solo if it is already soloed.

        Returns:
            The soloed instrument, or None
        """
        self.solo_instrument = None if self.solo_instrument == instrument_id else instrument_id
        return self.solo_instrument

    async def play(self, snapshot: ScoreSnapshot, from_measure: int = 1) -> Optional[PlaybackSession]:
        """
        Play a snapshot from a measure.

        Waits for every sample to load (or fail) before scheduling any note.

        Args:
            snapshot: Score to play
            from_measure: First measure to play

        Returns:
            The new session, or None if it was stopped/superseded while
            loading or the device failed
        """
        self.stop()

        session = PlaybackSession(snapshot, from_measure)
        self._session = session

        try:
            self.context.resume()
        except AudioDeviceError as e:
            _LOGGER.error("[PLAYBACK] Cannot start playback: %s", e)
            self._session = None
            return None

        notes = snapshot.playable_notes(from_measure)
        _LOGGER.info("[PLAYBACK] Loading %d note(s) from measure %d", len(notes), from_measure)
        try:
            await self.samples.preload(self.context, notes)
        except asyncio.CancelledError:
            if self._session is session:
                self._session = None
            raise

        if self._session is not session:
            _LOGGER.info("[PLAYBACK] Session replaced while loading samples")
            return None

        with self.context.lock:
            # Previous bus stays connected until now so its reverb tail rings out
            if self._graph is not None:
                self._graph.disconnect()
            self._graph = AudioGraph.build(self.context)

            timeline = MeasureTimeline.build(snapshot, from_measure)
            scheduler = NoteScheduler(self.context, self._graph.dry_bus, self.samples)
            session.start_time = self.context.current_time
            count = scheduler.schedule_score(
                snapshot,
                timeline,
                session.start_time,
                self.schedule_ahead,
                self.solo_instrument,
                self.muted_instruments,
            )
            session.timeline = timeline
            session.graph = self._graph
            session.scheduler = scheduler
            session.state = PlaybackState.PLAYING

        _LOGGER.info("[PLAYBACK] Playing measures %d-%d (%d note(s), %.2fs)",
                     timeline.first_measure, timeline.last_measure, count, timeline.total_duration)

        session.playhead = PlayheadReporter(
            self.context,
            timeline,
            session.start_time,
            on_measure_change=self._emit_measure_change,
            on_tick=self._on_tick,
            on_finished=self._finish,
            schedule_ahead=self.schedule_ahead,
            tick_rate=self.tick_rate,
        )
        session.playhead.start()
        return session

    def stop(self):
        """
        Stop playback now. No-op when nothing is playing.

        Safe to call from inside a measure-change or tick callback.
        """
        session = self._session
        if session is None:
            return
        self._session = None
        with self.context.lock:
            session.teardown()
        _LOGGER.info("[PLAYBACK] Stopped")
        self._emit_tick(PlaybackTick(stopped=True))

    def _finish(self):
        session = self._session
        if session is None:
            return
        self.stop()
        # Send the score view back to where playback started
        self._emit_measure_change(session.start_measure)

    def _emit_measure_change(self, measure: int):
        if self.on_measure_change is None:
            return
        try:
            self.on_measure_change(measure)
        except Exception:
            _LOGGER.exception("[PLAYHEAD] Measure change callback failed")

    def _on_tick(self, tick: PlaybackTick):
        session = self._session
        if session is not None and session.scheduler is not None:
            with self.context.lock:
                session.scheduler.release_finished()
        self._emit_tick(tick)

    def _emit_tick(self, tick: PlaybackTick):
        if self.on_playback_tick is None:
            return
        try:
            self.on_playback_tick(tick)
        except Exception:
            _LOGGER.exception("[PLAYHEAD] Playback tick callback failed")

    def close(self):
        """Stop playback and release the audio device."""
        self.stop()
        self.context.close()


def render_snapshot(snapshot: ScoreSnapshot,
                    from_measure: int = 1,
                    samples: Optional[SampleCache] = None,
                    sample_rate: int = 44100,
                    tail: float = 2.0,
                    solo: Optional[str] = None,
                    muted: Collection[str] = ()) -> np.ndarray:
    """
    Render a snapshot offline, the same way play() would sound it.

    Args:
        snapshot: Score to render
        from_measure: First measure
        samples: Sample cache (None = synthesized tones only)
        sample_rate: Output sample rate
        tail: Seconds rendered past the last measure (reverb tail)
        solo: Soloed instrument
        muted: Muted instruments

    Returns:
        Stereo float32 array (frames x 2)
    """
    context = OfflineAudioContext(sample_rate)
    if samples is not None:
        asyncio.run(samples.preload(context, snapshot.playable_notes(from_measure)))

    graph = AudioGraph.build(context)
    timeline = MeasureTimeline.build(snapshot, from_measure)
    scheduler = NoteScheduler(context, graph.dry_bus, samples)
    scheduler.schedule_score(snapshot, timeline, context.current_time, SCHEDULE_AHEAD, solo, muted)
    return context.render_seconds(SCHEDULE_AHEAD + timeline.total_duration + tail)
