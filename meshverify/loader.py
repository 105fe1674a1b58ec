"""Load config snapshots, retry policies, and recorded traffic results (YAML or JSON)."""

import json
import os
from typing import Any, List, Optional

import yaml

from meshverify.models import (
    Backoff,
    RetryPolicy,
    Snapshot,
    TrafficResult,
    VerificationError,
)


class SnapshotLoadError(VerificationError):
    """Raised when a snapshot or results file cannot be read or parsed."""


class PolicyValidationError(VerificationError):
    """Raised when a retry policy file fails validation."""


def load_snapshot(path: str, source: Optional[str] = None) -> Snapshot:
    """Load a configuration dump from a YAML or JSON file.

    Args:
        path: Path to the dump.
        source: Name recorded on the snapshot. Defaults to the path.

    Returns:
        A Snapshot wrapping the parsed document.

    Raises:
        SnapshotLoadError: If the file is missing, unreadable, or invalid.
    """
    return Snapshot(source=source or path, data=_read_document(path))


def load_policy(path: str) -> RetryPolicy:
    """Load a retry policy from a YAML or JSON file.

    Recognized keys are ``timeout_seconds``, ``interval_seconds``,
    ``backoff`` (``fixed`` or ``exponential``), ``max_interval_seconds``
    and ``multiplier``. Missing keys take the RetryPolicy defaults.

    Raises:
        PolicyValidationError: If the file is unreadable or any value is invalid.
    """
    try:
        raw = _read_document(path)
    except SnapshotLoadError as exc:
        raise PolicyValidationError(str(exc)) from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise PolicyValidationError("policy must be a mapping/object at the top level")
    # allow the policy to live under a top-level 'retry' key
    if isinstance(raw.get("retry"), dict):
        raw = raw["retry"]
    return build_policy(raw)


def build_policy(raw: dict) -> RetryPolicy:
    """Construct and validate a RetryPolicy from a raw dict."""
    errors: List[str] = []
    defaults = RetryPolicy()

    timeout = _non_negative(raw, "timeout_seconds", defaults.timeout, errors)
    interval = _non_negative(raw, "interval_seconds", defaults.interval, errors)
    max_interval = _non_negative(raw, "max_interval_seconds", defaults.max_interval, errors)
    for key, value in (("interval_seconds", interval), ("max_interval_seconds", max_interval)):
        if value == 0:
            errors.append(f"'{key}' must be > 0")
    interval = interval or defaults.interval
    max_interval = max_interval or defaults.max_interval
    multiplier = _non_negative(raw, "multiplier", defaults.multiplier, errors)
    if multiplier < 1:
        errors.append("'multiplier' must be >= 1")
        multiplier = defaults.multiplier

    backoff_raw = raw.get("backoff", defaults.backoff.value)
    try:
        backoff = Backoff(backoff_raw)
    except ValueError:
        errors.append(
            f"'backoff' must be one of: {', '.join(b.value for b in Backoff)} (got {backoff_raw!r})"
        )
        backoff = defaults.backoff

    unknown = sorted(set(raw) - _POLICY_KEYS)
    if unknown:
        errors.append(f"unknown policy keys: {', '.join(unknown)}")

    if errors:
        raise PolicyValidationError(
            "policy validation failed:\n  - " + "\n  - ".join(errors)
        )

    return RetryPolicy(
        timeout=timeout,
        interval=interval,
        backoff=backoff,
        max_interval=max_interval,
        multiplier=multiplier,
    )


def load_results(path: str) -> List[TrafficResult]:
    """Load recorded per-request traffic results.

    The file holds a list whose entries are either a hostname string or a
    mapping with ``hostname`` and optional ``ok`` / ``error`` keys. A
    mapping with a top-level ``results`` list is also accepted.

    Raises:
        SnapshotLoadError: If the file is unreadable or malformed.
    """
    raw = _read_document(path)
    if isinstance(raw, dict) and "results" in raw:
        raw = raw["results"]
    if not isinstance(raw, list):
        raise SnapshotLoadError("results must be a list")

    results = []
    for i, entry in enumerate(raw):
        if isinstance(entry, str):
            results.append(TrafficResult(hostname=entry))
        elif isinstance(entry, dict):
            error = entry.get("error")
            results.append(TrafficResult(
                hostname=str(entry.get("hostname") or ""),
                ok=bool(entry.get("ok", error is None)),
                error=str(error) if error is not None else None,
            ))
        else:
            raise SnapshotLoadError(f"results[{i}] must be a string or a mapping")
    return results


# -- internal helpers ---------------------------------------------------------


_POLICY_KEYS = {
    "timeout_seconds",
    "interval_seconds",
    "backoff",
    "max_interval_seconds",
    "multiplier",
}


def _read_document(path: str) -> Any:
    if not os.path.isfile(path):
        raise SnapshotLoadError(f"file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    if ext not in (".yaml", ".yml", ".json"):
        raise SnapshotLoadError(
            f"unsupported file extension: {ext} (expected .yaml, .yml, or .json)"
        )
    try:
        with open(path, "r", encoding="utf-8") as f:
            if ext == ".json":
                return json.load(f)
            return yaml.safe_load(f)
    # JSONDecodeError and UnicodeDecodeError are both ValueErrors
    except (yaml.YAMLError, ValueError) as exc:
        raise SnapshotLoadError(f"failed to parse {path}: {exc}") from exc
    except OSError as exc:
        raise SnapshotLoadError(f"failed to read {path}: {exc}") from exc


def _non_negative(raw: dict, key: str, default: float, errors: List[str]) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append(f"'{key}' must be a number")
        return default
    if value < 0:
        errors.append(f"'{key}' must be >= 0")
        return default
    return float(value)
