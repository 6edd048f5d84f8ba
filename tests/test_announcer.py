"""Tests for call-out timing, cue planning and de-duplication."""

import asyncio

from rally_client.announcer import GO_FREQ_HZ, COUNT_FREQ_HZ, Announcer, Cue, LoopCueSink, plan_cues
from rally_client.protocol import Player, Rally, RoomState
from rally_client.schedule import Phase, compute_rally
from rally_client.settings import LocalSettings

NOW = 1_700_000_000_000
FIVE_MIN = 300_000


class FakeSink:
    def __init__(self, now=100.0):
        self._now = now
        self.cues = []
        self.lines = []

    def now(self):
        return self._now

    def play_cue(self, cue):
        self.cues.append(cue)

    def speak(self, text, volume):
        self.lines.append((text, volume))


def timeline_at(now, players=None, launch_at=NOW + 400_000, starter="a"):
    players = players or [Player("a", "Alpha", 30_000)]
    state = RoomState(players=players, rally=Rally(starter, launch_at))
    return compute_rally(state, now, FIVE_MIN)


def rally_target(launch_at=NOW + 400_000):
    # single starter: rally start = launch - duration
    return launch_at - FIVE_MIN


def test_plan_cues_full_countdown():
    cues = plan_cues(target_ms=10_000, now_ms=6_000, sink_now=100.0)
    assert [c.at for c in cues] == [100.25, 101.0, 101.75, 102.5, 103.25, 104.0]
    assert all(c.freq == COUNT_FREQ_HZ for c in cues[:-1])
    assert cues[-1].freq == GO_FREQ_HZ
    assert cues[-1].gain > cues[0].gain


def test_plan_cues_drops_beeps_already_past():
    cues = plan_cues(target_ms=10_000, now_ms=8_000, sink_now=100.0)
    # go at 102.0; only beeps at 100.5, 101.25 remain
    assert [c.at for c in cues] == [100.5, 101.25, 102.0]


def test_plan_cues_target_passed_plays_go_only():
    cues = plan_cues(target_ms=10_000, now_ms=11_000, sink_now=100.0)
    assert len(cues) == 1
    assert cues[0].freq == GO_FREQ_HZ
    assert abs(cues[0].at - 100.02) < 1e-9


def test_plan_cues_scales_gain():
    loud = plan_cues(10_000, 6_000, 0.0, gain_factor=1.0)
    quiet = plan_cues(10_000, 6_000, 0.0, gain_factor=0.5)
    assert quiet[0].gain == loud[0].gain * 0.5


def test_announces_once_in_trigger_window():
    sink = FakeSink()
    ann = Announcer(sink, LocalSettings())
    now = rally_target() - 4000
    tl = timeline_at(now)
    assert tl.phase is Phase.JOIN

    made = ann.update(tl, now)
    assert [a.player_id for a in made] == ["a"]
    assert sink.lines == [("Alpha, get ready", 0.8)]
    assert len(sink.cues) == 6

    # recomputed on the next tick: no repeat
    assert ann.update(timeline_at(now + 200), now + 200) == []
    assert len(sink.lines) == 1


def test_too_early_and_too_late_are_skipped():
    ann = Announcer(FakeSink(), LocalSettings())
    early = rally_target() - 5000
    assert ann.update(timeline_at(early), early) == []
    late = rally_target() - 500
    assert ann.update(timeline_at(late), late) == []


def test_missed_window_still_calls_late():
    ann = Announcer(FakeSink(), LocalSettings())
    now = rally_target() - 2000
    assert len(ann.update(timeline_at(now), now)) == 1


def test_only_selected_players_are_called():
    players = [Player("a", "Alpha", 30_000), Player("b", "Bravo", 30_000)]
    settings = LocalSettings(selected_ids=["b"])
    ann = Announcer(FakeSink(), settings)
    now = rally_target() - 4000
    made = ann.update(timeline_at(now, players), now)
    assert [a.player_id for a in made] == ["b"]


def test_march_calls_follow_settings():
    launch_at = NOW
    settings = LocalSettings()
    ann = Announcer(FakeSink(), settings)
    # starter starts marching at launch; MARCH phase needs a longer march to have a future target
    players = [Player("a", "Alpha", 30_000), Player("b", "Bravo", 10_000)]
    now = launch_at + 16_000  # Bravo starts at launch + 20s
    tl = timeline_at(now, players, launch_at=launch_at)
    assert tl.phase is Phase.MARCH
    assert ann.update(tl, now) == []

    settings.update(march_calls=True)
    made = ann.update(tl, now)
    assert [(a.player_id, a.target_at) for a in made] == [("b", launch_at + 20_000)]


def test_voice_disabled_calls_nothing():
    ann = Announcer(FakeSink(), LocalSettings(voice_enabled=False))
    now = rally_target() - 4000
    assert ann.update(timeline_at(now), now) == []


def test_keys_cleared_when_rally_ends():
    ann = Announcer(FakeSink(), LocalSettings())
    now = rally_target() - 4000
    assert ann.update(timeline_at(now), now)
    assert ann.announced

    ann.update(None, now)
    assert not ann.announced
    assert ann.update(timeline_at(now), now)


def test_new_rally_resets_keys():
    players = [Player("a", "Alpha", 30_000), Player("b", "Bravo", 30_000)]
    ann = Announcer(FakeSink(), LocalSettings())
    now = rally_target() - 4000
    assert len(ann.update(timeline_at(now, players, starter="a"), now)) == 2

    # same targets, but a different rally instance
    other = timeline_at(now, players, starter="b")
    assert other.rally_key != timeline_at(now, players, starter="a").rally_key
    assert len(ann.update(other, now)) == 2


async def test_loop_sink_plays_at_absolute_time():
    played = []
    sink = LoopCueSink(on_cue=played.append)
    cue = Cue(at=sink.now() + 0.01, freq=720.0, duration=0.085, gain=0.05)
    sink.play_cue(cue)
    assert sink.pending == 1
    await asyncio.sleep(0.05)
    assert played == [cue]


async def test_loop_sink_cancel_drops_pending():
    played = []
    sink = LoopCueSink(on_cue=played.append)
    sink.play_cue(Cue(at=sink.now() + 10, freq=720.0, duration=0.085, gain=0.05))
    sink.cancel()
    assert sink.pending == 0
    await asyncio.sleep(0)
    assert played == []
