"""
Announcement Scheduler
======================

Calls out players shortly before their personal target instant: a voice
line followed by a countdown of beeps ending exactly on the target.

The beep times are computed once, as absolute times in the cue sink's own
clock, and handed over in one go. Chaining relative sleeps would let timer
drift accumulate over the five-beep sequence.

De-duplication key: (phase, player id, target instant). Keys live for one
rally instance and are dropped when the rally ends or is replaced.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .schedule import Phase, RallyTimeline
from .settings import LocalSettings

logger = logging.getLogger(__name__)

# Trigger window (ms before the target)
TRIGGER_MS = 4200
TOLERANCE_MS = 350
LATE_FLOOR_MS = 600

# Beep cadence
BEEP_SPACING_S = 0.75
BEEP_COUNT = 5
BEEP_LEAD_S = BEEP_COUNT * BEEP_SPACING_S
COUNT_FREQ_HZ = 720.0
GO_FREQ_HZ = 1100.0
BASE_GAIN = 0.065
MIN_LEAD_S = 0.02


@dataclass(frozen=True)
class Cue:
    """A beep to be played at an absolute sink time (seconds)."""
    at: float
    freq: float
    duration: float
    gain: float


@dataclass(frozen=True)
class Announcement:
    phase: Phase
    player_id: str
    name: str
    target_at: int

    @property
    def key(self) -> tuple[Phase, str, int]:
        return (self.phase, self.player_id, self.target_at)


class CueSink(Protocol):
    """Audio/speech back end. Times are in the sink's own clock domain."""

    def now(self) -> float: ...

    def play_cue(self, cue: Cue) -> None: ...

    def speak(self, text: str, volume: float) -> None: ...


def plan_cues(
    target_ms: int,
    now_ms: int,
    sink_now: float,
    *,
    spacing: float = BEEP_SPACING_S,
    lead: float = BEEP_LEAD_S,
    gain: float = BASE_GAIN,
    gain_factor: float = 1.0,
) -> list[Cue]:
    """Countdown beeps ending on ``target_ms``, expressed in sink time.

    The target is mapped into the sink clock once; count beeps sit at
    ``go - k * spacing`` for k = 5..1, and any that would fall in the past
    or before the lead window are dropped. The final "go" beep is always
    scheduled, at the earliest playable time if the target has passed.
    """
    seconds_left = max(0.0, (target_ms - now_ms) / 1000)
    base = sink_now + seconds_left
    earliest = sink_now + MIN_LEAD_S
    start = max(earliest, base - lead)
    go = max(earliest, base)

    cues = []
    for k in range(BEEP_COUNT, 0, -1):
        at = go - k * spacing
        if start <= at <= go - 0.01:
            cues.append(Cue(at=at, freq=COUNT_FREQ_HZ, duration=0.085, gain=gain * gain_factor))
    cues.append(Cue(at=go, freq=GO_FREQ_HZ, duration=0.12, gain=gain * 1.1 * gain_factor))
    return cues


class LoopCueSink:
    """Cue sink driven by the asyncio event loop clock.

    Each cue is registered with ``loop.call_at`` at its absolute time; the
    actual sound output is left to ``on_cue`` (default: log it).
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None, on_cue=None, on_speak=None):
        self._loop = loop
        self._on_cue = on_cue
        self._on_speak = on_speak
        self._handles: list[asyncio.TimerHandle] = []

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def play_cue(self, cue: Cue) -> None:
        self._handles = [h for h in self._handles if not h.cancelled() and h.when() >= self.now()]
        self._handles.append(self.loop.call_at(cue.at, self._fire, cue))

    def speak(self, text: str, volume: float) -> None:
        if self._on_speak:
            self._on_speak(text, volume)
        else:
            logger.info(f"Say: {text!r} (volume {volume:.0%})")

    def _fire(self, cue: Cue):
        if self._on_cue:
            self._on_cue(cue)
        else:
            logger.info(f"Beep {cue.freq:.0f}Hz gain={cue.gain:.3f}")

    @property
    def pending(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled() and h.when() >= self.now())

    def cancel(self):
        """Drop every cue not yet played."""
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()


class Announcer:
    """Edge-triggered call-outs layered on the per-tick rally projection.

    Args:
        sink:          Where cues and voice lines go.
        settings:      Local preferences (toggles, volumes, selected players).
        trigger_ms:    Lead time at which a call is due.
        tolerance_ms:  Width of the on-time window below ``trigger_ms``.
        late_floor_ms: Calls missed by the on-time window still fire while
                       more than this much time is left.
    """

    def __init__(
        self,
        sink: CueSink,
        settings: LocalSettings,
        trigger_ms: int = TRIGGER_MS,
        tolerance_ms: int = TOLERANCE_MS,
        late_floor_ms: int = LATE_FLOOR_MS,
    ):
        self.sink = sink
        self.settings = settings
        self.trigger_ms = trigger_ms
        self.tolerance_ms = tolerance_ms
        self.late_floor_ms = late_floor_ms
        self._announced: set[tuple[Phase, str, int]] = set()
        self._rally_key: Optional[tuple[str, int]] = None

    @property
    def announced(self) -> frozenset:
        return frozenset(self._announced)

    def reset(self):
        """Forget every call made for the current rally."""
        self._announced.clear()
        self._rally_key = None

    def _is_due(self, ms_left: int) -> bool:
        on_time_floor = self.trigger_ms - self.tolerance_ms
        if on_time_floor <= ms_left <= self.trigger_ms:
            return True
        return self.late_floor_ms < ms_left < on_time_floor

    def update(self, timeline: Optional[RallyTimeline], now_ms: int) -> list[Announcement]:
        """Run one tick. Returns the announcements made on this tick."""
        if timeline is None:
            if self._rally_key is not None:
                self.reset()
            return []
        if timeline.rally_key != self._rally_key:
            self._announced.clear()
            self._rally_key = timeline.rally_key

        s = self.settings
        if not s.voice_enabled:
            return []
        if timeline.phase is Phase.JOIN and not s.rally_calls:
            return []
        if timeline.phase is Phase.MARCH and not s.march_calls:
            return []

        selected = set(s.selected_ids)
        made = []
        for row in timeline.rows:
            if selected and row.player.id not in selected:
                continue
            target = row.rally_start_at if timeline.phase is Phase.JOIN else row.start_at
            ann = Announcement(timeline.phase, row.player.id, row.player.name, target)
            if ann.key in self._announced:
                continue
            if not self._is_due(target - now_ms):
                continue
            self._announced.add(ann.key)
            self._call(ann, now_ms)
            made.append(ann)
        return made

    def _call(self, ann: Announcement, now_ms: int):
        logger.info(f"Calling {ann.name} for {ann.phase.value} at {ann.target_at}")
        self.sink.speak(f"{ann.name}, get ready", self.settings.voice_volume)
        for cue in plan_cues(ann.target_at, now_ms, self.sink.now(), gain_factor=self.settings.beep_gain_factor):
            self.sink.play_cue(cue)
