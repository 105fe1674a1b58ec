"""Tests for per-workload convergence checking."""

import json
import os

import pytest

from meshverify.convergence import (
    ConvergenceChecker,
    ConvergenceError,
    FileWorkload,
    route_established,
)
from meshverify.loader import SnapshotLoadError, load_snapshot
from meshverify.models import PollStatus, RetryPolicy
from meshverify.retry import CancelToken, RetryPoller
from meshverify.structpath import AssertionFailed, exists


FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "..", "fixtures")


HOST = "fake-service.example.com"


def _fixture(name):
    return os.path.join(FIXTURES_DIR, name)


def _dump(name):
    with open(_fixture(name), "r") as f:
        return json.load(f)


CONVERGED = _dump("config-dump-converged.json")
PENDING = _dump("config-dump-pending.json")


@pytest.fixture
def checker(clock):
    return ConvergenceChecker(RetryPoller(clock), RetryPolicy(timeout=5, interval=1))


class TestRouteEstablished:
    def test_converged_dump_satisfies_both_assertions(self):
        snapshot = load_snapshot(_fixture("config-dump-converged.json"))
        for assertion in route_established(HOST):
            assertion.check(snapshot)

    def test_pending_dump_fails(self):
        snapshot = load_snapshot(_fixture("config-dump-pending.json"))
        results = [a.evaluate(snapshot) for a in route_established(HOST)]
        assert [r.ok for r in results] == [False, False]

    def test_uses_port_in_names(self):
        virtual_host, cluster = route_established(HOST, 8080)
        assert f"'{HOST}:8080'" in virtual_host.expression.text
        assert f"'outbound|8080||{HOST}'" in cluster.expression.text


class TestWaitForRoute:
    def test_all_workloads_converged(self, checker, make_workload):
        workloads = [make_workload("a-1", [CONVERGED]), make_workload("a-2", [CONVERGED])]
        assert checker.wait_for_route(workloads, route_established(HOST)) == ["a-1", "a-2"]

    def test_waits_for_late_workload(self, checker, make_workload, clock):
        workload = make_workload("a-1", [PENDING, PENDING, CONVERGED])
        assert checker.wait_for_route([workload], route_established(HOST)) == ["a-1"]
        assert workload.fetches == 3
        assert clock.now == 2

    def test_skips_workloads_without_proxy(self, checker, make_workload):
        bare = make_workload("no-sidecar", [PENDING], proxy=False)
        proxied = make_workload("a-1", [CONVERGED])
        assert checker.wait_for_route([bare, proxied], route_established(HOST)) == ["a-1"]
        assert bare.fetches == 0

    def test_fails_fast_on_first_unconverged_workload(self, checker, make_workload):
        first = make_workload("a-1", [CONVERGED])
        second = make_workload("a-2", [PENDING])
        third = make_workload("a-3", [CONVERGED])

        with pytest.raises(ConvergenceError) as exc_info:
            checker.wait_for_route([first, second, third], route_established(HOST))

        err = exc_info.value
        assert err.workload == "a-2"
        assert err.status is PollStatus.TIMED_OUT
        assert isinstance(err.cause, AssertionFailed)
        assert "a-2" in str(err)
        assert third.fetches == 0

    def test_transient_fetch_error_is_retried(self, checker, make_workload):
        workload = make_workload("a-1", [ConnectionError("admin port refused"), CONVERGED])
        assert checker.wait_for_route([workload], route_established(HOST)) == ["a-1"]

    def test_persistent_fetch_error_reported(self, checker, make_workload):
        workload = make_workload("a-1", [ConnectionError("admin port refused")])
        with pytest.raises(ConvergenceError, match="admin port refused") as exc_info:
            checker.wait_for_route([workload], route_established(HOST))
        assert isinstance(exc_info.value.cause, ConnectionError)

    def test_single_assertion(self, checker, make_workload):
        assertion = exists(".configs[*].dynamicActiveClusters[?(@.cluster.name == 'outbound|80||%s')]", HOST)
        assert checker.wait_for_route([make_workload("a-1", [CONVERGED])], assertion) == ["a-1"]

    def test_requires_an_assertion(self, checker, make_workload):
        with pytest.raises(ValueError):
            checker.wait_for_route([make_workload("a-1", [CONVERGED])], [])

    @pytest.mark.parametrize("assertion", [
        ".configs[*]",
        [exists(".configs"), ".configs[*]"],
    ])
    def test_rejects_non_assertions(self, checker, make_workload, assertion):
        workload = make_workload("a-1", [CONVERGED])
        with pytest.raises(TypeError, match="expected Assertion"):
            checker.wait_for_route([workload], assertion)
        assert workload.fetches == 0

    def test_policy_override(self, checker, make_workload, clock):
        workload = make_workload("a-1", [PENDING])
        with pytest.raises(ConvergenceError):
            checker.wait_for_route([workload], route_established(HOST), RetryPolicy(timeout=1, interval=0.25))
        assert clock.now == 1

    def test_cancelled(self, checker, make_workload):
        token = CancelToken()
        token.cancel()
        with pytest.raises(ConvergenceError, match="cancelled") as exc_info:
            checker.wait_for_route([make_workload("a-1", [PENDING])], route_established(HOST), cancel=token)
        assert exc_info.value.status is PollStatus.CANCELLED

    def test_no_workloads(self, checker):
        assert checker.wait_for_route([], route_established(HOST)) == []


class TestFileWorkload:
    def test_fetches_from_file(self):
        workload = FileWorkload(_fixture("config-dump-converged.json"), name="a-1")
        snapshot = workload.fetch_snapshot()
        assert snapshot.source == "a-1"
        assert workload.has_proxy()

    def test_name_defaults_to_path(self):
        path = _fixture("config-dump-pending.json")
        assert FileWorkload(path).name == path

    def test_missing_file(self):
        with pytest.raises(SnapshotLoadError):
            FileWorkload("/nonexistent/dump.json").fetch_snapshot()
