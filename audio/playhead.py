"""
Playhead reporter.

Polls the audio clock at a fixed rate while a session plays and maps
elapsed time to (measure, fraction of the measure) for the score view.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from audio.context import AudioContext
from audio.scheduler import SCHEDULE_AHEAD, MeasureTimeline

_LOGGER = logging.getLogger(__name__)

DEFAULT_TICK_RATE = 60  # Hz, one tick per display frame


@dataclass(frozen=True)
class PlaybackTick:
    """
    Playhead position sent to the UI.

    Attributes:
        measure: Measure under the playhead (None once stopped)
        beat_fraction: Share of the measure elapsed (0.0 at the downbeat)
        stopped: True when playback has ended (hide the playhead)
    """
    measure: Optional[int] = None
    beat_fraction: float = 0.0
    stopped: bool = False


class PlayheadReporter:
    """
    Fixed-rate polling task for one playback session.

    Every tick reads the context clock, so the reported position never
    drifts from the audio even if ticks arrive late.
    """

    def __init__(self,
                 context: AudioContext,
                 timeline: MeasureTimeline,
                 session_start: float,
                 on_measure_change: Callable[[int], None],
                 on_tick: Callable[[PlaybackTick], None],
                 on_finished: Callable[[], None],
                 schedule_ahead: float = SCHEDULE_AHEAD,
                 tick_rate: float = DEFAULT_TICK_RATE):
        """
        Args:
            context: Context whose clock is polled
            timeline: Measure timing of the session
            session_start: Context time the session started at
            on_measure_change: Called when the measure under the playhead changes
            on_tick: Called with the position every tick
            on_finished: Called once when playback runs past the end
            schedule_ahead: Lead before the first note
            tick_rate: Ticks per second
        """
        self.context = context
        self.timeline = timeline
        self.session_start = session_start
        self.schedule_ahead = schedule_ahead
        self.interval = 1.0 / tick_rate
        self.current_measure: Optional[int] = None
        self.stopped = False

        self._on_measure_change = on_measure_change
        self._on_tick = on_tick
        self._on_finished = on_finished
        self._task: Optional[asyncio.Task] = None

    @property
    def elapsed(self) -> float:
        return self.context.current_time - self.session_start

    def start(self) -> "asyncio.Task[None]":
        """Start polling on the running event loop."""
        self._task = asyncio.ensure_future(self._run())
        return self._task

    async def _run(self):
        while not self.stopped:
            self.tick()
            if self.stopped:
                break
            await asyncio.sleep(self.interval)

    def tick(self) -> Optional[PlaybackTick]:
        """
        Report the current position once.

        Returns:
            The tick sent, or None if playback finished (or was stopped)
        """
        if self.stopped:
            return None

        elapsed = self.elapsed
        if elapsed >= self.timeline.total_duration + self.schedule_ahead:
            self.stopped = True
            _LOGGER.debug("[PLAYHEAD] End reached at %.3fs", elapsed)
            self._on_finished()
            return None

        measure = self.timeline.measure_at(elapsed)
        if measure != self.current_measure:
            self.current_measure = measure
            self._on_measure_change(measure)
            if self.stopped:
                return None

        fraction = (elapsed - self.timeline.measure_start(measure)) / self.timeline.measure_duration(measure)
        position = PlaybackTick(measure=measure, beat_fraction=fraction, stopped=False)
        self._on_tick(position)
        return position

    def cancel(self):
        """
        Stop polling. Safe to call from inside a tick callback.
        """
        self.stopped = True
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # The loop exits on its own when cancelled from within a tick
        if task is not current:
            task.cancel()
