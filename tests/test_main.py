"""Tests for the command-line entry point helpers."""

import argparse
import asyncio

import pytest

from rally_client.__main__ import cancel_and_wait, parse_args, parse_player, select_players
from rally_client.protocol import Player, RoomState
from rally_client.settings import LocalSettings


def test_parse_player():
    assert parse_player("Speed:32.5") == ("Speed", 32_500)
    assert parse_player("Big: Bad:40") == ("Big: Bad", 40_000)


@pytest.mark.parametrize("value", ["Speed", ":30", "Speed:soon", "Speed:0", "Speed:nan"])
def test_parse_player_rejects(value):
    with pytest.raises(argparse.ArgumentTypeError):
        parse_player(value)


def test_select_option_repeats():
    args = parse_args(["client", "--select", "Alpha", "--select", "Bravo"])
    assert args.select == ["Alpha", "Bravo"]


def test_select_players_marks_named_players():
    state = RoomState(players=[Player("a", "Alpha", 30_000), Player("b", "Bravo", 50_000)])
    settings = LocalSettings(selected_ids=["b"])

    missing = select_players(settings, state, ["Alpha", "Bravo", "Zulu"])
    assert missing == ["Zulu"]
    assert sorted(settings.selected_ids) == ["a", "b"]


async def test_cancel_and_wait_finishes_task():
    stopped = []

    async def printer():
        try:
            while True:
                await asyncio.sleep(1)
        finally:
            stopped.append(True)

    task = asyncio.create_task(printer())
    await asyncio.sleep(0)
    await cancel_and_wait(task)
    assert task.done()
    assert stopped == [True]
