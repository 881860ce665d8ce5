"""
Sample-accurate parameter automation.

An AudioParam holds a short timeline of automation events (instant set,
linear ramp, exponential approach to a target) and renders it into
per-sample value arrays for a block of frames. Times are in seconds on
the owning graph's clock.
"""

import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

_SET = "set"
_RAMP = "ramp"
_TARGET = "target"

# Remaining fraction of a target approach at which it counts as finished
_SETTLE_FRACTION = 1e-3


@dataclass(frozen=True)
class _Event:
    kind: str
    time: float
    value: float
    time_constant: float = 0.0


@dataclass(frozen=True)
class _Segment:
    kind: str
    start: float
    end: float
    start_value: float
    end_value: float
    time_constant: float = 0.0

    def evaluate(self, t):
        if self.kind == _RAMP:
            span = self.end - self.start
            frac = (t - self.start) / span
            return self.start_value + (self.end_value - self.start_value) * frac
        if self.kind == _TARGET:
            return self.end_value + (self.start_value - self.end_value) * np.exp(
                -(t - self.start) / self.time_constant
            )
        return self.start_value + 0.0 * t


class AudioParam:
    """
    One automatable scalar.

    Scheduling methods mirror the usual audio-graph automation calls:
    ``set_value_at_time``, ``linear_ramp_to_value_at_time``,
    ``set_target_at_time`` and ``cancel_and_hold_at_time``. The timeline is
    collapsed on every cancel so it never grows beyond a couple of events.
    """

    def __init__(
        self,
        name: str,
        default_value: float,
        min_value: float = -math.inf,
        max_value: float = math.inf,
    ):
        self.name = name
        self.default_value = float(default_value)
        self.min_value = min_value
        self.max_value = max_value
        self._initial = self._clamp(default_value)
        self._events: List[_Event] = []

    def _clamp(self, value: float) -> float:
        return float(min(self.max_value, max(self.min_value, value)))

    def set_value(self, value: float) -> None:
        """Instantly replace the whole timeline with a constant."""
        self._initial = self._clamp(value)
        self._events = []

    def set_value_at_time(self, value: float, time: float) -> None:
        self._insert(_Event(_SET, time, self._clamp(value)))

    def linear_ramp_to_value_at_time(self, value: float, end_time: float) -> None:
        """Ramp linearly from the previous event's value to ``value`` at ``end_time``."""
        self._insert(_Event(_RAMP, end_time, self._clamp(value)))

    def set_target_at_time(self, target: float, start_time: float, time_constant: float) -> None:
        """Approach ``target`` exponentially from ``start_time``."""
        if time_constant <= 0:
            self.set_value_at_time(target, start_time)
            return
        self._insert(_Event(_TARGET, start_time, self._clamp(target), float(time_constant)))

    def cancel_and_hold_at_time(self, time: float) -> float:
        """
        Freeze the parameter at its instantaneous value at ``time``.

        Everything scheduled after ``time`` is dropped and the held value is
        re-asserted as a set event, so a following ramp starts without a
        discontinuity. Returns the held value.
        """
        held = self.value_at(time)
        self._initial = held
        self._events = [_Event(_SET, time, held)]
        return held

    def _insert(self, event: _Event) -> None:
        index = len(self._events)
        while index > 0 and self._events[index - 1].time > event.time:
            index -= 1
        self._events.insert(index, event)

    def _segments(self) -> List[_Segment]:
        segments: List[_Segment] = []
        start, start_value = -math.inf, self._initial
        kind, target, tau = _SET, start_value, 0.0

        def value_of_current(at: float) -> float:
            if kind == _TARGET and at > start:
                return target + (start_value - target) * math.exp(-(at - start) / tau)
            return start_value

        for event in self._events:
            if event.kind == _RAMP:
                if start == -math.inf or event.time <= start:
                    # Nothing to ramp from: hold, then jump
                    segments.append(_Segment(_SET, start, event.time, start_value, start_value))
                else:
                    segments.append(
                        _Segment(_RAMP, start, event.time, start_value, event.value)
                    )
                start, start_value, kind = event.time, event.value, _SET
                target, tau = start_value, 0.0
                continue

            end_value = value_of_current(event.time)
            segments.append(_Segment(kind, start, event.time, start_value, target, tau))
            if event.kind == _SET:
                start, start_value, kind = event.time, event.value, _SET
                target, tau = start_value, 0.0
            else:
                start, start_value, kind = event.time, end_value, _TARGET
                target, tau = event.value, event.time_constant

        segments.append(_Segment(kind, start, math.inf, start_value, target, tau))
        return segments

    def value_at(self, time: float) -> float:
        """Value of the parameter at a single instant."""
        for segment in self._segments():
            if segment.start <= time < segment.end:
                if segment.kind == _SET:
                    return segment.start_value
                return float(segment.evaluate(time))
        return self._initial

    def values(self, start_time: float, n_frames: int, sample_rate: float) -> np.ndarray:
        """Per-sample values for ``n_frames`` starting at ``start_time``."""
        if self.is_static(start_time, start_time + n_frames / sample_rate):
            return np.full(n_frames, self.value_at(start_time), dtype=np.float64)

        t = start_time + np.arange(n_frames, dtype=np.float64) / sample_rate
        out = np.empty(n_frames, dtype=np.float64)
        for segment in self._segments():
            if segment.end <= t[0] or segment.start > t[-1]:
                continue
            mask = (t >= segment.start) & (t < segment.end)
            if np.any(mask):
                out[mask] = segment.evaluate(t[mask])
        return out

    def final_value(self) -> float:
        """Value the timeline converges to once every event has elapsed."""
        return self._segments()[-1].end_value

    def is_static(self, start_time: float, end_time: float) -> bool:
        """True when the value cannot change inside [start_time, end_time)."""
        for segment in self._segments():
            if segment.end <= start_time or segment.start >= end_time:
                continue
            if segment.kind != _SET:
                if segment.kind == _TARGET and self._target_done(segment, start_time):
                    continue
                return False
            if segment.end < end_time:
                return False
        return True

    def is_settled(self, time: float) -> bool:
        """True once no ramp or target approach is still moving at ``time``."""
        for event in self._events:
            if event.time > time:
                return False
        last = self._segments()[-1]
        if last.kind == _TARGET:
            return self._target_done(last, time)
        return True

    @staticmethod
    def _target_done(segment: _Segment, time: float) -> bool:
        if segment.start_value == segment.end_value:
            return True
        return math.exp(-(time - segment.start) / segment.time_constant) < _SETTLE_FRACTION

    def prune(self, time: float) -> None:
        """Collapse a finished timeline into a constant."""
        if self._events and self.is_settled(time):
            self._initial = self.final_value()
            self._events = []

    def __repr__(self) -> str:
        return f"AudioParam({self.name!r}, initial={self._initial}, events={len(self._events)})"
