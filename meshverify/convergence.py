"""Wait until every workload's proxy has received the expected configuration."""

from typing import Callable, List, Optional, Protocol, Sequence, Union

import structlog

from meshverify.loader import load_snapshot
from meshverify.models import PollStatus, RetryPolicy, Snapshot, VerificationError
from meshverify.retry import CancelToken, PollResult, RetryPoller
from meshverify.structpath import Assertion, exists

logger = structlog.get_logger(__name__)

# Proxies usually pick up a pushed change within a few seconds.
CONVERGENCE_POLICY = RetryPolicy(timeout=10.0, interval=0.1)


class Workload(Protocol):
    name: str

    def has_proxy(self) -> bool:
        ...

    def fetch_snapshot(self) -> Snapshot:
        ...


class ConfigApplier(Protocol):
    def apply(self, namespace: str, manifest: str) -> None:
        ...


class ConvergenceError(VerificationError):
    """Raised when a workload's configuration never satisfied the assertions."""

    def __init__(self, workload: str, result: PollResult):
        self.workload = workload
        self.status = result.status
        self.attempts = result.attempts
        self.elapsed = result.elapsed
        self.cause = result.last_error
        if result.status is PollStatus.CANCELLED:
            detail = f"cancelled after {result.attempts} attempts"
        else:
            detail = (
                f"timed out after {result.elapsed:.2f}s "
                f"({result.attempts} attempts): {result.last_error}"
            )
        super().__init__(f"workload {workload} did not converge: {detail}")


class FileWorkload:
    """A workload whose proxy config dump is read from a file on every fetch."""

    def __init__(self, path: str, name: Optional[str] = None, proxy: bool = True):
        self.path = path
        self.name = name or path
        self._proxy = proxy

    def has_proxy(self) -> bool:
        return self._proxy

    def fetch_snapshot(self) -> Snapshot:
        return load_snapshot(self.path, source=self.name)


def route_established(host: str, port: int = 80) -> List[Assertion]:
    """Assertions that hold once a proxy has a route and a cluster for ``host``."""
    return [
        exists(
            "{.configs[*].dynamicRouteConfigs[*].routeConfig.virtualHosts[?(@.name == '%s')]}",
            f"{host}:{port}",
        ),
        exists(
            "{.configs[*].dynamicActiveClusters[?(@.cluster.name == '%s')]}",
            f"outbound|{port}||{host}",
        ),
    ]


class ConvergenceChecker:
    """Polls each workload's snapshot until it satisfies a set of assertions.

    Workloads are checked one at a time in the order given, and the first
    one that fails to converge aborts the whole check.
    """

    def __init__(self, poller: Optional[RetryPoller] = None, policy: Optional[RetryPolicy] = None):
        self._poller = poller or RetryPoller()
        self._policy = policy or CONVERGENCE_POLICY

    def wait_for_route(
        self,
        workloads: Sequence[Workload],
        assertion: Union[Assertion, Sequence[Assertion]],
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[str]:
        """Wait for every proxied workload to satisfy ``assertion``.

        Args:
            workloads: Workloads to check, in order. Those without a proxy
                are skipped.
            assertion: One Assertion, or several that must all hold on the
                same snapshot.
            policy: Per-workload retry policy. Defaults to the checker's.
            cancel: Optional token that aborts the current poll.

        Returns:
            Names of the workloads that converged.

        Raises:
            ConvergenceError: For the first workload that timed out or was
                cancelled. Later workloads are not checked.
            TypeError: If an item of ``assertion`` is not an Assertion.
        """
        assertions = [assertion] if isinstance(assertion, Assertion) else list(assertion)
        if not assertions:
            raise ValueError("at least one assertion is required")
        for item in assertions:
            if not isinstance(item, Assertion):
                raise TypeError(f"expected Assertion, got {type(item).__name__}: {item!r}")
        policy = policy or self._policy

        converged = []
        for workload in workloads:
            if not workload.has_proxy():
                logger.debug("Skipping workload without proxy", workload=workload.name)
                continue
            result = self._poller.wait_for(_accept(workload, assertions), policy, cancel)
            if not result.ok:
                raise ConvergenceError(workload.name, result)
            logger.debug(
                "Workload converged",
                workload=workload.name,
                attempts=result.attempts,
                elapsed=round(result.elapsed, 3),
            )
            converged.append(workload.name)
        return converged


def _accept(workload: Workload, assertions: List[Assertion]) -> Callable[[], bool]:
    def accept() -> bool:
        snapshot = workload.fetch_snapshot()
        for assertion in assertions:
            assertion.check(snapshot)
        return True

    return accept
