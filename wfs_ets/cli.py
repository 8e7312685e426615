# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line interface for wfs-ets.

Provides ``run`` to verify a service, ``list`` to show the registered
checks, ``serve`` to start the built-in reference service, and ``loggers``
to print the logger names accepted by ``--log-logger``.

Usage::

    wfs-ets run http://localhost:8080/wfs
    wfs-ets run http://localhost:8080/wfs --filter "locking.*" --format json
    wfs-ets list --filter paging
    wfs-ets serve --port 8080

"""

from __future__ import annotations

import json
import sys
from enum import StrEnum
from typing import Annotated

import typer

from wfs_ets.config import VerifierConfig
from wfs_ets.conformance import ConformanceResult, ConformanceSuite, Outcome, list_conformance_tests, run_verification
from wfs_ets.errors import VerificationError
from wfs_ets.logging_utils import KNOWN_LOGGERS, configure_logging

# ---------------------------------------------------------------------------
# Output format enums
# ---------------------------------------------------------------------------


class OutputFormat(StrEnum):
    """Output format for run results."""

    table = "table"
    json = "json"


class LogFormat(StrEnum):
    """Output format for log records."""

    text = "text"
    json = "json"


app = typer.Typer(
    name="wfs-ets",
    help="Verify the locking, paging and stored query behaviour of a WFS 2.0 service.",
    add_completion=False,
    no_args_is_help=True,
)

_STATUS_LABELS: dict[Outcome, str] = {Outcome.PASSED: "PASS", Outcome.FAILED: "FAIL", Outcome.SKIPPED: "SKIP"}


# ---------------------------------------------------------------------------
# Output formatting
# ---------------------------------------------------------------------------


def _format_table(suite: ConformanceSuite) -> str:
    """Format results as a human-readable table."""
    lines: list[str] = []
    lines.append(
        f"wfs-ets: {suite.passed} passed, {suite.failed} failed, {suite.skipped} skipped"
        f" ({suite.duration_ms / 1000:.2f}s)"
    )
    lines.append("")

    for r in suite.results:
        lines.append(f"  {r.name:<45s} {_STATUS_LABELS[r.outcome]:>4s}  {r.duration_ms:>7.1f}ms")
        if r.error:
            lines.append(f"    {r.error}")
        for warning in r.warnings:
            lines.append(f"    warning: {warning}")

    return "\n".join(lines)


def _format_json(suite: ConformanceSuite) -> str:
    """Format results as JSON."""
    data: dict[str, object] = {
        "total": suite.total,
        "passed": suite.passed,
        "failed": suite.failed,
        "skipped": suite.skipped,
        "duration_ms": round(suite.duration_ms, 1),
        "results": [
            {
                "name": r.name,
                "category": r.category,
                "outcome": str(r.outcome),
                "duration_ms": round(r.duration_ms, 1),
                "error": r.error,
                "warnings": list(r.warnings),
            }
            for r in suite.results
        ],
    }
    return json.dumps(data, indent=2)


def _progress(result: ConformanceResult) -> None:
    """Write one progress character per completed check."""
    sys.stderr.write({Outcome.PASSED: ".", Outcome.FAILED: "F", Outcome.SKIPPED: "s"}[result.outcome])
    sys.stderr.flush()


def _split_patterns(patterns: list[str] | None) -> list[str] | None:
    """Accept both repeated ``--filter`` options and comma-separated lists."""
    if not patterns:
        return None
    return [p.strip() for raw in patterns for p in raw.split(",") if p.strip()]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def run(
    url: Annotated[str, typer.Argument(help="Service endpoint answering GetCapabilities")],
    filter_patterns: Annotated[
        list[str] | None, typer.Option("--filter", "-k", help="Glob pattern on check names (repeatable)")
    ] = None,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.table,
    timeout: Annotated[
        float | None, typer.Option("--timeout", help="Per-check timeout in seconds", envvar="WFS_ETS_TEST_TIMEOUT")
    ] = None,
    seed: Annotated[int | None, typer.Option("--seed", help="Seed for feature selection", envvar="WFS_ETS_SEED")] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", help="Enable logging at this level")] = None,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log record format")] = LogFormat.text,
    log_logger: Annotated[
        list[str] | None, typer.Option("--log-logger", help="Logger to configure (repeatable)")
    ] = None,
) -> None:
    """Run the checks against the service at URL."""
    if log_level:
        try:
            configure_logging(log_level, log_logger or (), str(log_format))
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--log-level") from None
    try:
        config = VerifierConfig.from_env().with_overrides(test_timeout=timeout)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from None

    on_progress = _progress if fmt is OutputFormat.table and sys.stderr.isatty() else None
    try:
        suite = run_verification(
            url,
            config=config,
            seed=seed,
            filter_patterns=_split_patterns(filter_patterns),
            on_progress=on_progress,
        )
    except VerificationError as e:
        typer.echo(f"Error: cannot verify {url}: {e}", err=True)
        raise typer.Exit(1) from None
    if on_progress is not None:
        sys.stderr.write("\n")

    typer.echo(_format_json(suite) if fmt is OutputFormat.json else _format_table(suite))
    raise typer.Exit(0 if suite.success else 1)


@app.command("list")
def list_checks(
    filter_patterns: Annotated[
        list[str] | None, typer.Option("--filter", "-k", help="Glob pattern on check names (repeatable)")
    ] = None,
) -> None:
    """List the registered checks."""
    for name in list_conformance_tests(_split_patterns(filter_patterns)):
        typer.echo(name)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to listen on")] = 8080,
    path: Annotated[str, typer.Option("--path", help="Route of the service endpoint")] = "/wfs",
    log_level: Annotated[str | None, typer.Option("--log-level", help="Enable logging at this level")] = None,
) -> None:
    """Serve the built-in reference WFS."""
    from wfs_ets.reference import serve as serve_reference

    if log_level:
        try:
            configure_logging(log_level, ("wfs_ets.reference",))
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--log-level") from None
    typer.echo(f"Serving reference WFS on http://{host}:{port}{path}", err=True)
    serve_reference(host, port, path=path)


@app.command()
def loggers() -> None:
    """Print the logger names accepted by --log-logger."""
    width = max(len(name) for name, _, _ in KNOWN_LOGGERS)
    for name, description, hint in KNOWN_LOGGERS:
        typer.echo(f"{name:<{width}s}  {description}. {hint}.")
