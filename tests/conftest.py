"""Shared fakes for polling and convergence tests."""

import pytest

from meshverify.models import Snapshot


class FakeClock:
    """Clock whose sleeps advance virtual time instantly."""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []
        self.on_sleep = None

    def monotonic(self):
        return self.now

    def sleep(self, seconds, cancel):
        self.sleeps.append(seconds)
        if self.on_sleep:
            self.on_sleep(self)
        if not cancel.cancelled:
            self.now += seconds

    def advance(self, seconds):
        self.now += seconds


class FakeWorkload:
    """Serves a scripted series of snapshots; the last one repeats forever.

    An Exception in the script is raised from fetch_snapshot instead.
    """

    def __init__(self, name, script, proxy=True):
        self.name = name
        self._script = list(script)
        self._proxy = proxy
        self.fetches = 0

    def has_proxy(self):
        return self._proxy

    def fetch_snapshot(self):
        self.fetches += 1
        item = self._script[min(self.fetches, len(self._script)) - 1]
        if isinstance(item, Exception):
            raise item
        return Snapshot(self.name, item)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_workload():
    return FakeWorkload
