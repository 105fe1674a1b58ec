"""Append-only log of verification outcomes in JSONL format."""

import json
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import List, Optional

from meshverify.models import VerificationEvent


def create_event(
    check: str,
    subject: str,
    outcome: str = "pass",
    details: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> VerificationEvent:
    """Build a VerificationEvent stamped with the current UTC time.

    Args:
        check: Kind of verification ("assert", "wait", "route", "traffic").
        subject: What was checked: snapshot paths, workloads, or source->target.
        outcome: "pass" or "fail".
        details: Human-readable lines describing the result.
        now: Timestamp to record instead of the current time.

    Returns:
        A populated VerificationEvent.
    """
    ts = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
    return VerificationEvent(
        ts=ts,
        check=check,
        subject=subject,
        outcome=outcome,
        details=list(details or []),
    )


def append_event(event: VerificationEvent, log_path: str) -> None:
    """Append a single event as a JSONL line, creating the file if needed.

    Existing entries are never rewritten.
    """
    parent = os.path.dirname(log_path)
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, exist_ok=True)

    with open(log_path, "a") as f:
        f.write(json.dumps(asdict(event)) + "\n")


def read_events(log_path: str) -> List[VerificationEvent]:
    """Read all events from a JSONL log. Malformed lines are skipped."""
    if not os.path.isfile(log_path):
        return []

    events = []
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(raw, dict):
                continue
            events.append(VerificationEvent(
                ts=raw.get("ts", ""),
                check=raw.get("check", ""),
                subject=raw.get("subject", ""),
                outcome=raw.get("outcome", ""),
                details=raw.get("details", []),
            ))
    return events
