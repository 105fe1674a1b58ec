"""CLI entry point for the convergence verification toolkit."""

import json
import re
import sys

import click

from meshverify.convergence import (
    ConvergenceChecker,
    ConvergenceError,
    FileWorkload,
    route_established,
)
from meshverify.evidence import append_event, create_event
from meshverify.loader import (
    PolicyValidationError,
    SnapshotLoadError,
    build_policy,
    load_policy,
    load_results,
    load_snapshot,
)
from meshverify.logconfig import configure_logging
from meshverify.models import Backoff
from meshverify.structpath import ParseError, evaluate, exists, not_exists, parse
from meshverify.traffic import RecordedTransport, TrafficError, TrafficVerifier


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log polling and traffic progress to stderr.")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines.")
def main(verbose, json_logs):
    """Convergence verification -- query config dumps, wait for routes, and verify traffic."""
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")


def _fail(message):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _build_assertions(exists_exprs, absent_exprs):
    if not exists_exprs and not absent_exprs:
        _fail("at least one --exists or --not-exists expression is required")
    try:
        return [exists(e) for e in exists_exprs] + [not_exists(e) for e in absent_exprs]
    except ParseError as exc:
        _fail(exc)


def _resolve_policy(policy_path, timeout, interval, backoff):
    """Load the policy file (if any) and apply command-line overrides on top."""
    try:
        policy = load_policy(policy_path) if policy_path else build_policy({})
        overrides = {
            "timeout_seconds": timeout if timeout is not None else policy.timeout,
            "interval_seconds": interval if interval is not None else policy.interval,
            "backoff": backoff or policy.backoff.value,
            "max_interval_seconds": policy.max_interval,
            "multiplier": policy.multiplier,
        }
        return build_policy(overrides)
    except PolicyValidationError as exc:
        _fail(exc)


def _log(log_path, check, subject, outcome, details):
    if log_path:
        append_event(create_event(check, subject, outcome, details), log_path)
        click.echo(f"Evidence logged to {log_path}")


def _policy_options(command):
    options = [
        click.option(
            "--policy",
            "policy_path",
            default=None,
            type=click.Path(exists=True),
            help="Retry policy file (YAML or JSON).",
        ),
        click.option("--timeout", type=float, default=None, help="Seconds to keep polling each workload."),
        click.option("--interval", type=float, default=None, help="Seconds between attempts."),
        click.option(
            "--backoff",
            type=click.Choice([b.value for b in Backoff]),
            default=None,
            help="Delay strategy between attempts.",
        ),
        click.option(
            "--log",
            "log_path",
            default=None,
            type=click.Path(),
            help="Optional path to the evidence log (JSONL).",
        ),
    ]
    for option in reversed(options):
        command = option(command)
    return command


@main.command()
@click.option(
    "--snapshot",
    required=True,
    type=click.Path(exists=True),
    help="Path to a config dump (YAML or JSON).",
)
@click.argument("expression")
def query(snapshot, expression):
    """Print every value EXPRESSION selects from a config dump."""
    try:
        expr = parse(expression)
        data = load_snapshot(snapshot)
    except (ParseError, SnapshotLoadError) as exc:
        _fail(exc)
    click.echo(json.dumps(evaluate(expr, data), indent=2, default=str))


@main.command("assert")
@click.option(
    "--snapshot",
    required=True,
    type=click.Path(exists=True),
    help="Path to a config dump (YAML or JSON).",
)
@click.option("--exists", "exists_exprs", multiple=True, help="Expression that must match.")
@click.option("--not-exists", "absent_exprs", multiple=True, help="Expression that must not match.")
@click.option(
    "--log",
    "log_path",
    default=None,
    type=click.Path(),
    help="Optional path to the evidence log (JSONL).",
)
def assert_cmd(snapshot, exists_exprs, absent_exprs, log_path):
    """Check path assertions against a single config dump."""
    assertions = _build_assertions(exists_exprs, absent_exprs)
    try:
        data = load_snapshot(snapshot)
    except SnapshotLoadError as exc:
        _fail(exc)

    results = [a.evaluate(data) for a in assertions]
    lines = []
    for r in results:
        status = "PASS" if r.ok else "FAIL"
        lines.append(f"{status} {r.expectation.value} {r.expression} ({r.matches} matches)")
    for line in lines:
        click.echo(line)

    failed = any(not r.ok for r in results)
    _log(log_path, "assert", snapshot, "fail" if failed else "pass", lines)
    if failed:
        sys.exit(1)


def _run_convergence(check, workloads, assertions, policy, log_path):
    checker = ConvergenceChecker(policy=policy)
    subject = ",".join(w.name for w in workloads)
    try:
        converged = checker.wait_for_route(workloads, assertions)
    except ConvergenceError as exc:
        click.echo(f"Status: FAIL\n{exc}")
        _log(log_path, check, subject, "fail", [str(exc)])
        sys.exit(1)

    click.echo("Status: PASS")
    lines = [f"converged: {name}" for name in converged]
    for line in lines:
        click.echo(line)
    _log(log_path, check, subject, "pass", lines)


@main.command()
@click.option(
    "--snapshot",
    "snapshots",
    required=True,
    multiple=True,
    type=click.Path(),
    help="Config dump of one workload; re-read on every attempt. Repeat per workload.",
)
@click.option("--exists", "exists_exprs", multiple=True, help="Expression that must match.")
@click.option("--not-exists", "absent_exprs", multiple=True, help="Expression that must not match.")
@_policy_options
def wait(snapshots, exists_exprs, absent_exprs, policy_path, timeout, interval, backoff, log_path):
    """Poll workload config dumps until every assertion holds."""
    assertions = _build_assertions(exists_exprs, absent_exprs)
    policy = _resolve_policy(policy_path, timeout, interval, backoff)
    workloads = [FileWorkload(path) for path in snapshots]
    _run_convergence("wait", workloads, assertions, policy, log_path)


@main.command()
@click.option(
    "--snapshot",
    "snapshots",
    required=True,
    multiple=True,
    type=click.Path(),
    help="Config dump of one workload; re-read on every attempt. Repeat per workload.",
)
@click.option("--host", required=True, help="Destination host the route is for.")
@click.option("--port", default=80, show_default=True, type=int, help="Destination service port.")
@_policy_options
def route(snapshots, host, port, policy_path, timeout, interval, backoff, log_path):
    """Wait until every workload has a route and a cluster for HOST."""
    policy = _resolve_policy(policy_path, timeout, interval, backoff)
    workloads = [FileWorkload(path) for path in snapshots]
    _run_convergence("route", workloads, route_established(host, port), policy, log_path)


@main.command()
@click.option(
    "--results",
    required=True,
    type=click.Path(exists=True),
    help="Recorded per-request results (YAML or JSON).",
)
@click.option("--count", default=100, show_default=True, type=click.IntRange(min=1),
              help="Number of requests the batch must contain.")
@click.option("--expect", "expected_origin", required=True,
              help="Regex every responding backend must match, e.g. '^b-.*$'.")
@click.option("--source", default="client", show_default=True, help="Name of the calling endpoint.")
@click.option("--target", default="target", show_default=True, help="Host the requests were sent to.")
@click.option(
    "--log",
    "log_path",
    default=None,
    type=click.Path(),
    help="Optional path to the evidence log (JSONL).",
)
def traffic(results, count, expected_origin, source, target, log_path):
    """Verify a recorded traffic batch landed only on expected backends."""
    try:
        matcher = re.compile(expected_origin)
    except re.error as exc:
        _fail(f"invalid --expect pattern: {exc}")
    try:
        recorded = load_results(results)
    except SnapshotLoadError as exc:
        _fail(exc)

    verifier = TrafficVerifier(RecordedTransport(recorded))
    subject = f"{source}->{target}"
    try:
        report = verifier.send_and_verify(source, target, count, matcher)
    except TrafficError as exc:
        click.echo(f"Status: FAIL\n{exc}")
        _log(log_path, "traffic", subject, "fail", [str(exc)])
        sys.exit(1)

    click.echo("Status: PASS")
    lines = [f"{host}: {hits}" for host, hits in sorted(report.origins.items())]
    for line in lines:
        click.echo(line)
    _log(log_path, "traffic", subject, "pass", lines)


if __name__ == "__main__":
    main()
