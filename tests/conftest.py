"""Shared fixtures for the signage player tests."""

import asyncio

import pytest

from signage_player.models.api_collections import PlaylistResponse
from signage_player.models.assets import Asset


class FakeDisplay:
    """Display surface that records everything it was asked to show."""

    def __init__(self, fail_on=()):
        self.shown = []
        self.errors = []
        self.fail_on = set(fail_on)

    async def show(self, asset):
        self.shown.append(asset)
        if asset.path in self.fail_on:
            raise RuntimeError(f"cannot render {asset.path}")

    async def show_error(self, message):
        self.errors.append(message)


class FakeTimer:
    def __init__(self, delay, callback, args):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        assert not self.cancelled, "fired a cancelled timer"
        self.fired = True
        self.callback(*self.args)


class FakeTimers:
    """Stand-in for loop.call_later that lets tests decide when time passes."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback, *args):
        timer = FakeTimer(delay, callback, args)
        self.timers.append(timer)
        return timer

    @property
    def active(self):
        return [timer for timer in self.timers if not (timer.cancelled or timer.fired)]

    @property
    def last(self):
        return self.timers[-1]


async def settle(rounds=5):
    """Let tasks spawned by timer callbacks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def asset_payload(filepath, filetype="jpg", time="10", name=None, playing_order=None):
    record = {"filepath": filepath, "filetype": filetype, "time": time}
    if name is not None:
        record["name"] = name
    if playing_order is not None:
        record["playing_order"] = playing_order
    return record


def make_response(*playlists, restarting=False):
    return PlaylistResponse.model_validate({
        "playlists": list(playlists),
        "functions": {"is_restarting": restarting},
    })


def make_asset(filepath, filetype="jpg", duration=10, name=None, playing_order=0):
    return Asset(filepath=filepath, filetype=filetype, duration=duration,
                 name=name, playing_order=playing_order)


@pytest.fixture
def display():
    return FakeDisplay()


@pytest.fixture
def timers():
    return FakeTimers()
