"""
Rally Schedule
==============

Pure projection of a room state onto a rally timeline.

Every player's march is back-computed from the starter's landing instant
so that all marches land together:

    arrival_at       = launch_at + starter.march
    start_at[P]      = arrival_at - P.march
    rally_start_at[P] = start_at[P] - rally_duration

The projection is re-derived from scratch on every tick; nothing here keeps
state between calls.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .protocol import Player, RoomState


class Phase(str, Enum):
    JOIN = "JOIN"    # gathering window open, counting down to launch
    MARCH = "MARCH"  # wave launched


@dataclass(frozen=True)
class RallyRow:
    """One player's share of the rally. Deltas are signed, never clamped."""

    player: Player
    start_at: int
    rally_start_at: int
    time_until_start: int
    time_until_rally_start: int
    offset_from_launch: int
    time_until_landing: int

    @property
    def before_march(self) -> bool:
        """Player must set off before the launch instant."""
        return self.offset_from_launch < 0


@dataclass(frozen=True)
class RallyTimeline:
    starter: Player
    launch_at: int
    rally_duration_ms: int
    rally_start_at: int
    arrival_at: int
    join_remaining_ms: int
    phase: Phase
    rows: tuple[RallyRow, ...]

    @property
    def rally_key(self) -> tuple[str, int]:
        """Identity of the rally instance this timeline belongs to."""
        return (self.starter.id, self.launch_at)

    def row_for(self, player_id: str) -> Optional[RallyRow]:
        for row in self.rows:
            if row.player.id == player_id:
                return row
        return None


def phase_at(launch_at: int, now_ms: int) -> Phase:
    return Phase.JOIN if now_ms < launch_at else Phase.MARCH


def compute_rally(
    state: RoomState, corrected_now: float, rally_duration_ms: int
) -> Optional[RallyTimeline]:
    """Compute the timeline of the active rally.

    Args:
        state:             Current room state replica.
        corrected_now:     Local time plus clock offset (ms).
        rally_duration_ms: Locally configured rally length, used only when
                           the rally itself does not carry one.

    Returns:
        The timeline, or None when there is no rally or its starter is gone.
    """
    rally = state.rally
    if rally is None:
        return None
    starter = state.find_player(rally.starter_id)
    if starter is None:
        return None

    now = int(round(corrected_now))
    duration = rally.rally_duration_ms if rally.rally_duration_ms is not None else int(rally_duration_ms)
    launch_at = rally.launch_at
    arrival_at = launch_at + starter.march_duration_ms

    rows = []
    for player in state.players:
        start_at = arrival_at - player.march_duration_ms
        player_rally_start = start_at - duration
        rows.append(RallyRow(
            player=player,
            start_at=start_at,
            rally_start_at=player_rally_start,
            time_until_start=start_at - now,
            time_until_rally_start=player_rally_start - now,
            offset_from_launch=start_at - launch_at,
            time_until_landing=arrival_at - now,
        ))
    # stable sort: equal start times keep roster order
    rows.sort(key=lambda r: r.start_at)

    return RallyTimeline(
        starter=starter,
        launch_at=launch_at,
        rally_duration_ms=duration,
        rally_start_at=launch_at - duration,
        arrival_at=arrival_at,
        join_remaining_ms=launch_at - now,
        phase=phase_at(launch_at, now),
        rows=tuple(rows),
    )
