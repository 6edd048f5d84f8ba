"""Tests for timeline text formatting."""

import pytest

from rally_client.display import (
    countdown_text,
    format_ms,
    format_signed_ms,
    format_time_of_day,
    render_timeline,
    status_text,
    sync_label,
)
from rally_client.protocol import Player, Rally, RoomState
from rally_client.schedule import Phase, compute_rally

NOW = 1_700_000_000_000


@pytest.mark.parametrize(
    "ms,text",
    [(0, "00:00"), (61_000, "01:01"), (-5000, "00:00"), (1500, "00:02"), (59_600, "01:00"), (600_000, "10:00")],
)
def test_format_ms(ms, text):
    assert format_ms(ms) == text


def test_format_signed_ms_keeps_sign():
    assert format_signed_ms(-65_000) == "-01:05"
    assert format_signed_ms(65_000) == "01:05"


def test_format_time_of_day_is_utc():
    assert format_time_of_day(0) == "00:00:00 UTC"
    assert format_time_of_day(3_723_000) == "01:02:03 UTC"


def two_player_timeline(now):
    players = [Player("p1", "Fast", 30_000), Player("p2", "Slow", 50_000)]
    state = RoomState(players=players, rally=Rally("p1", NOW + 400_000))
    return compute_rally(state, now, 300_000)


def test_join_texts():
    tl = two_player_timeline(NOW)
    slow = tl.row_for("p2")
    # Slow's rally starts at launch - 20s - 5min = NOW + 80s
    assert countdown_text(slow, Phase.JOIN) == "in 01:20 (before March)"
    assert status_text(slow, Phase.JOIN) == "RALLY PENDING"

    fast = tl.row_for("p1")
    later = two_player_timeline(NOW + 110_000)
    assert countdown_text(later.row_for("p1"), Phase.JOIN) == "running 00:10"
    assert status_text(later.row_for("p1"), Phase.JOIN) == "RALLY RUNNING"
    assert "(before March)" not in countdown_text(fast, Phase.JOIN)


def test_march_texts():
    tl = two_player_timeline(NOW + 395_000)
    # launch at +400s: Slow already left 15s ago, Fast leaves in 5s
    assert countdown_text(tl.row_for("p2"), Phase.MARCH) == "since 00:15"
    assert status_text(tl.row_for("p2"), Phase.MARCH) == "MARCHING"
    assert countdown_text(tl.row_for("p1"), Phase.MARCH) == "00:05"
    assert status_text(tl.row_for("p1"), Phase.MARCH) == "WAIT"


def test_render_timeline():
    assert render_timeline(None) == "No rally started yet."
    text = render_timeline(two_player_timeline(NOW))
    assert "Starter: Fast" in text
    assert "[JOIN] March starts in 06:40" in text
    assert text.index("Slow") < text.index("  Fast")


def test_sync_label():
    assert sync_label(True) == "Synced"
    assert sync_label(False) == "Syncing"
