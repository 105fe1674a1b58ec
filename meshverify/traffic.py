"""Send a batch of requests and verify which backends answered them."""

import re
from collections import Counter
from typing import Dict, List, Optional, Protocol, Sequence, Union

import structlog

from meshverify.models import CallOptions, TrafficReport, TrafficResult, VerificationError

logger = structlog.get_logger(__name__)


class TrafficError(VerificationError):
    """Base class for traffic verification failures."""

    def __init__(self, source: str, target: str, message: str):
        self.source = source
        self.target = target
        super().__init__(f"{source}->{target} {message}")


class TransportError(TrafficError):
    """Raised when the request batch itself could not be sent."""

    def __init__(self, source: str, target: str, cause: BaseException):
        self.cause = cause
        super().__init__(source, target, f"failed sending: {cause}")


class CountMismatch(TrafficError):
    """Raised when the batch returned a different number of responses than requested."""

    def __init__(self, source: str, target: str, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(source, target, f"expected {expected} responses, received {actual}")


class OriginMismatch(TrafficError):
    """Raised when a response came from a backend outside the expected set."""

    def __init__(self, source: str, target: str, index: int, hostname: str, error: Optional[str] = None):
        self.index = index
        self.hostname = hostname
        self.error = error
        message = f"request[{index}] made to unexpected service: {hostname!r}"
        if error:
            message += f" (request error: {error})"
        super().__init__(source, target, message)


class Transport(Protocol):
    def call(self, target: str, options: CallOptions) -> Sequence[TrafficResult]:
        ...


class RecordedTransport:
    """Replays previously captured results instead of sending requests.

    At most ``options.count`` results are returned, so a short recording
    surfaces as a count mismatch.
    """

    def __init__(self, results: List[TrafficResult]):
        self._results = list(results)
        self.calls: List[CallOptions] = []

    def call(self, target: str, options: CallOptions) -> List[TrafficResult]:
        self.calls.append(options)
        return self._results[:options.count]


class TrafficVerifier:
    """Checks that every request in a batch landed on an acceptable backend.

    Example:
        verifier = TrafficVerifier(transport)
        verifier.send_and_verify("a", "b.external.svc", 100, r"^b-.*$")
    """

    def __init__(self, transport: Transport):
        self._transport = transport

    def send_and_verify(
        self,
        source: str,
        target: str,
        send_count: int,
        expected_origin: Union[str, re.Pattern],
        port_name: str = "http",
        headers: Optional[Dict[str, str]] = None,
    ) -> TrafficReport:
        """Send ``send_count`` requests to ``target`` and verify the responders.

        Args:
            source: Name of the calling endpoint, used in error messages.
            target: Host the requests are addressed to (sent as the Host header).
            send_count: Number of requests to send. Must be positive.
            expected_origin: Regex every responding backend identity must match.
            port_name: Named port on the caller to send through.
            headers: Extra request headers.

        Returns:
            A TrafficReport with hit counts per backend.

        Raises:
            TransportError: If the transport failed to send the batch.
            CountMismatch: If the number of responses differs from ``send_count``.
            OriginMismatch: For the first response from an unexpected backend.
        """
        if send_count <= 0:
            raise ValueError("send_count must be a positive integer")
        matcher = re.compile(expected_origin) if isinstance(expected_origin, str) else expected_origin

        options = CallOptions(
            target=target,
            count=send_count,
            port_name=port_name,
            headers={"Host": target, **(headers or {})},
        )
        try:
            results = list(self._transport.call(target, options))
        except Exception as exc:
            raise TransportError(source, target, exc) from exc
        logger.debug("Traffic batch completed", source=source, target=target, responses=len(results))

        if len(results) != send_count:
            raise CountMismatch(source, target, send_count, len(results))

        for i, result in enumerate(results):
            match = matcher.search(result.hostname or "")
            if not match or not match.group(0):
                raise OriginMismatch(source, target, i, result.hostname, result.error)

        return TrafficReport(
            source=source,
            target=target,
            sent=send_count,
            origins=dict(Counter(r.hostname for r in results)),
        )
