"""Tests for the rally timeline projection."""

from rally_client.protocol import Player, Rally, RoomState
from rally_client.schedule import Phase, compute_rally, phase_at

NOW = 1_700_000_000_000
FIVE_MIN = 300_000


def make_state(players, starter_id=None, launch_at=None, duration=None):
    rally = Rally(starter_id, launch_at, duration) if starter_id else None
    return RoomState(players=list(players), rally=rally, last_active_at=NOW)


def test_no_rally_is_absent():
    state = make_state([Player("a", "Alpha", 30_000)])
    assert compute_rally(state, NOW, FIVE_MIN) is None


def test_missing_starter_is_absent():
    state = make_state([Player("a", "Alpha", 30_000)], starter_id="gone", launch_at=NOW)
    assert compute_rally(state, NOW, FIVE_MIN) is None


def test_join_then_march_scenario():
    starter = Player("s", "Starter", 30_000)
    launch_at = NOW + 5000
    state = make_state([starter], starter_id="s", launch_at=launch_at)

    early = compute_rally(state, NOW + 1000, FIVE_MIN)
    assert early.phase is Phase.JOIN
    assert early.join_remaining_ms == 4000

    late = compute_rally(state, NOW + 6000, FIVE_MIN)
    assert late.phase is Phase.MARCH
    row = late.row_for("s")
    assert row.start_at == launch_at
    assert row.offset_from_launch == 0
    assert late.arrival_at == launch_at + 30_000
    assert late.rally_start_at == launch_at - FIVE_MIN


def test_longer_march_starts_before_launch():
    p1 = Player("p1", "Fast", 30_000)
    p2 = Player("p2", "Slow", 50_000)
    launch_at = NOW + 60_000
    state = make_state([p1, p2], starter_id="p1", launch_at=launch_at)

    tl = compute_rally(state, NOW, FIVE_MIN)
    assert tl.arrival_at == launch_at + 30_000
    slow = tl.row_for("p2")
    assert slow.start_at == launch_at - 20_000
    assert slow.offset_from_launch == -20_000
    assert slow.before_march
    assert slow.rally_start_at == launch_at - 20_000 - FIVE_MIN
    assert not tl.row_for("p1").before_march
    # soonest start first
    assert [r.player.id for r in tl.rows] == ["p2", "p1"]


def test_everyone_lands_together():
    players = [Player(str(i), f"P{i}", m) for i, m in enumerate([12_000, 95_000, 30_000, 0, 47_500])]
    state = make_state(players, starter_id="2", launch_at=NOW + 10_000)
    tl = compute_rally(state, NOW, FIVE_MIN)
    starter_row = tl.row_for("2")
    landing = starter_row.start_at + starter_row.player.march_duration_ms
    for row in tl.rows:
        assert row.start_at + row.player.march_duration_ms == landing
        assert row.time_until_landing == landing - NOW


def test_recompute_is_idempotent():
    state = make_state(
        [Player("a", "A", 30_000), Player("b", "B", 41_000)], starter_id="a", launch_at=NOW + 9000
    )
    assert compute_rally(state, NOW + 123, FIVE_MIN) == compute_rally(state, NOW + 123, FIVE_MIN)


def test_phase_is_monotonic_around_launch():
    launch_at = NOW
    state = make_state([Player("a", "A", 1000)], starter_id="a", launch_at=launch_at)
    phases = [compute_rally(state, t, FIVE_MIN).phase for t in range(launch_at - 3, launch_at + 3)]
    assert phases == [Phase.JOIN] * 3 + [Phase.MARCH] * 3
    assert phase_at(launch_at, launch_at) is Phase.MARCH


def test_past_deltas_stay_negative():
    state = make_state([Player("a", "A", 30_000)], starter_id="a", launch_at=NOW)
    tl = compute_rally(state, NOW + 45_000, FIVE_MIN)
    row = tl.rows[0]
    assert row.time_until_start == -45_000
    assert row.time_until_landing == -15_000
    assert row.time_until_rally_start == -45_000 - FIVE_MIN


def test_equal_starts_keep_roster_order():
    players = [Player("x", "X", 20_000), Player("y", "Y", 20_000), Player("s", "S", 40_000)]
    state = make_state(players, starter_id="s", launch_at=NOW)
    tl = compute_rally(state, NOW, FIVE_MIN)
    assert [r.player.id for r in tl.rows] == ["s", "x", "y"]


def test_rally_duration_from_room_wins_over_local():
    state = make_state([Player("a", "A", 30_000)], starter_id="a", launch_at=NOW, duration=600_000)
    tl = compute_rally(state, NOW, FIVE_MIN)
    assert tl.rally_duration_ms == 600_000
    assert tl.rally_start_at == NOW - 600_000


def test_corrected_now_is_rounded_to_ms():
    state = make_state([Player("a", "A", 30_000)], starter_id="a", launch_at=NOW + 1000)
    tl = compute_rally(state, NOW + 0.6, FIVE_MIN)
    assert tl.join_remaining_ms == 999
