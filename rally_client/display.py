"""
Display Formatting
==================

Text rendering of a rally timeline. Negative durations are clamped to zero
only here; the timeline itself keeps signed values.
"""

from datetime import datetime, timezone
from typing import Optional

from .schedule import Phase, RallyRow, RallyTimeline


def format_ms(ms: float) -> str:
    """MM:SS, rounded to the second; negatives show as 00:00."""
    total_sec = int(max(0, ms) / 1000 + 0.5)  # half-up, not banker's rounding
    return f"{total_sec // 60:02d}:{total_sec % 60:02d}"


def format_signed_ms(ms: float) -> str:
    return format_ms(ms) if ms >= 0 else f"-{format_ms(-ms)}"


def format_time_of_day(ts_ms: int) -> str:
    d = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return f"{d:%H:%M:%S} UTC"


def countdown_text(row: RallyRow, phase: Phase) -> str:
    if phase is Phase.JOIN:
        if row.time_until_rally_start > 0:
            text = f"in {format_ms(row.time_until_rally_start)}"
        else:
            text = f"running {format_ms(-row.time_until_rally_start)}"
        if row.before_march:
            text += " (before March)"
        return text
    if row.time_until_start > 0:
        return format_ms(row.time_until_start)
    return f"since {format_ms(-row.time_until_start)}"


def status_text(row: RallyRow, phase: Phase) -> str:
    if phase is Phase.JOIN:
        return "RALLY PENDING" if row.time_until_rally_start > 0 else "RALLY RUNNING"
    return "WAIT" if row.time_until_start > 0 else "MARCHING"


def sync_label(synced: bool) -> str:
    return "Synced" if synced else "Syncing"


def render_timeline(timeline: Optional[RallyTimeline]) -> str:
    """Multi-line summary of the rally for terminal output."""
    if timeline is None:
        return "No rally started yet."

    lines = [
        f"Starter: {timeline.starter.name}",
        f"Rally-Start at {format_time_of_day(timeline.rally_start_at)} | "
        f"March-Start at {format_time_of_day(timeline.launch_at)} | "
        f"Hit at {format_time_of_day(timeline.arrival_at)}",
    ]
    if timeline.phase is Phase.JOIN:
        lines.append(f"[JOIN] March starts in {format_ms(timeline.join_remaining_ms)}")
    else:
        lines.append(f"[MARCH] March started at {format_time_of_day(timeline.launch_at)}")

    width = max((len(r.player.name) for r in timeline.rows), default=6)
    for row in timeline.rows:
        lines.append(
            f"  {row.player.name:<{width}}  {format_time_of_day(row.rally_start_at)}  "
            f"{countdown_text(row, timeline.phase):<28}  "
            f"land {format_signed_ms(row.time_until_landing):>7}  "
            f"{status_text(row, timeline.phase)}"
        )
    return "\n".join(lines)
