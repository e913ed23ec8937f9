"""
Automatable audio parameters.

An AudioParam holds an intrinsic value plus a timeline of automation
events (set / linear ramp / exponential ramp). Values are evaluated per
sample for each render block, so envelopes land on exact sample times
regardless of block size. Nodes connected to a param add their output
to the computed value (e.g. an LFO driving detune).
"""
from dataclasses import dataclass
from typing import List, Optional, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from audio.nodes import AudioNode, RenderQuantum


SET = "set"
LINEAR = "linear"
EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class AutomationEvent:
    """
    Single automation event.

    Attributes:
        kind: "set", "linear" or "exponential"
        value: Target value
        time: Context time (seconds) at which the value is reached
    """
    kind: str
    value: float
    time: float


class AudioParam:
    """
    Sample-accurate automatable parameter.

    Ramps run from the previous event's (time, value) to their own;
    after the last event the final value holds.
    """

    def __init__(self, name: str, default: float,
                 min_value: float = -np.inf, max_value: float = np.inf):
        """
        Args:
            name: Parameter name (for debugging)
            default: Intrinsic value before any automation
            min_value: Lower clamp for computed values
            max_value: Upper clamp for computed values
        """
        self.name = name
        self.min_value = min_value
        self.max_value = max_value
        self._value = float(default)
        self.events: List[AutomationEvent] = []
        self.inputs: List["AudioNode"] = []

    @property
    def value(self) -> float:
        """Intrinsic value (used until the first automation event)."""
        return self._value

    @value.setter
    def value(self, value: float):
        self._value = float(value)

    def _insert(self, event: AutomationEvent) -> "AudioParam":
        if event.time < 0:
            raise ValueError(f"{self.name}: automation time must be >= 0, got {event.time}")
        # Stable insert: events at equal times keep call order
        index = len(self.events)
        while index > 0 and self.events[index - 1].time > event.time:
            index -= 1
        self.events.insert(index, event)
        return self

    def set_value_at_time(self, value: float, time: float) -> "AudioParam":
        """Jump to value at time."""
        return self._insert(AutomationEvent(SET, float(value), float(time)))

    def linear_ramp_to_value_at_time(self, value: float, time: float) -> "AudioParam":
        """Ramp linearly from the previous event to value, reached at time."""
        return self._insert(AutomationEvent(LINEAR, float(value), float(time)))

    def exponential_ramp_to_value_at_time(self, value: float, time: float) -> "AudioParam":
        """
        Ramp exponentially from the previous event to value, reached at time.

        Raises:
            ValueError: If value is zero (exponential curves never reach 0)
        """
        if value == 0:
            raise ValueError(f"{self.name}: exponential ramp target must be non-zero")
        return self._insert(AutomationEvent(EXPONENTIAL, float(value), float(time)))

    def cancel_scheduled_values(self, start_time: float = 0.0):
        """Drop every event at or after start_time."""
        self.events = [e for e in self.events if e.time < start_time]

    def value_at(self, time: float) -> float:
        """Automation value at a single time (no modulation inputs)."""
        return float(self._automation(np.array([time], dtype=np.float64))[0])

    def _automation(self, times: np.ndarray) -> np.ndarray:
        """Evaluate the automation timeline at the given times."""
        out = np.full(times.shape, self._value, dtype=np.float64)
        if not self.events:
            return out

        prev_time: Optional[float] = None
        prev_value = self._value
        for event in self.events:
            if event.kind == SET or prev_time is None or event.time <= prev_time:
                out[times >= event.time] = event.value
            else:
                span = event.time - prev_time
                mask = (times >= prev_time) & (times < event.time)
                if np.any(mask):
                    progress = (times[mask] - prev_time) / span
                    if (event.kind == EXPONENTIAL and prev_value != 0
                            and (prev_value > 0) == (event.value > 0)):
                        out[mask] = prev_value * np.power(event.value / prev_value, progress)
                    elif event.kind == EXPONENTIAL:
                        # Invalid exponential start: hold, then jump at the end
                        out[mask] = prev_value
                    else:
                        out[mask] = prev_value + (event.value - prev_value) * progress
                out[times >= event.time] = event.value
            prev_time = event.time
            prev_value = event.value
        return out

    def compute(self, quantum: "RenderQuantum") -> np.ndarray:
        """
        Per-sample values for a render block.

        Args:
            quantum: Render block being processed

        Returns:
            float64 array of quantum.frames values
        """
        values = self._automation(quantum.times)
        for node in self.inputs:
            values = values + node.pull(quantum)
        if self.min_value != -np.inf or self.max_value != np.inf:
            values = np.clip(values, self.min_value, self.max_value)
        return values

    def __repr__(self):
        return f"AudioParam({self.name}={self._value}, events={len(self.events)})"
