"""Data models for snapshots, retry policies, traffic results, and evidence events."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class VerificationError(Exception):
    """Base class for every failure reported by the toolkit."""


@dataclass(frozen=True)
class Snapshot:
    source: str  # workload name or file path the dump came from
    data: Any


class Backoff(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    timeout: float = 30.0  # seconds
    interval: float = 0.1  # seconds, first delay between attempts
    backoff: Backoff = Backoff.FIXED
    max_interval: float = 2.0  # ceiling for exponential backoff
    multiplier: float = 2.0

    def __post_init__(self):
        if self.timeout < 0:
            raise ValueError("timeout must be >= 0")
        if self.interval <= 0:
            raise ValueError("interval must be > 0")
        if self.max_interval <= 0:
            raise ValueError("max_interval must be > 0")


DEFAULT_POLICY = RetryPolicy()


class PollStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    TIMED_OUT = "timed-out"
    CANCELLED = "cancelled"


@dataclass
class CallOptions:
    target: str
    count: int
    port_name: str = "http"
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class TrafficResult:
    hostname: str = ""  # identity of the backend that answered
    ok: bool = True
    error: Optional[str] = None


@dataclass
class TrafficReport:
    source: str
    target: str
    sent: int
    origins: Dict[str, int] = field(default_factory=dict)  # hostname -> hits


@dataclass
class VerificationEvent:
    ts: str
    check: str  # "assert", "wait", "route", "traffic"
    subject: str
    outcome: str = "pass"
    details: List[str] = field(default_factory=list)
