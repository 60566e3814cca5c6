"""Turns a ConvergenceResult into a summary and a process exit code."""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .schemas import ConvergenceResult, ResourceState

EXIT_SUCCESS = 0
EXIT_TIMEOUT = 1
EXIT_FAILED = 2
EXIT_CYCLE = 3
EXIT_CANCELLED = 130

_STATE_STYLES = {
    ResourceState.READY: "green",
    ResourceState.NOT_READY: "yellow",
    ResourceState.FAILED: "red",
    ResourceState.TIMED_OUT: "red",
    ResourceState.CANCELLED: "magenta",
    ResourceState.NOT_ATTEMPTED: "dim",
}


def exit_code(result: ConvergenceResult) -> int:
    if result.error_type == "CyclicDependency":
        return EXIT_CYCLE
    if result.error_type is not None:
        return EXIT_FAILED
    states = {r.state for r in result.resources}
    if result.cancelled or ResourceState.CANCELLED in states:
        return EXIT_CANCELLED
    if ResourceState.FAILED in states:
        return EXIT_FAILED
    if ResourceState.TIMED_OUT in states:
        return EXIT_TIMEOUT
    if result.success:
        return EXIT_SUCCESS
    return EXIT_FAILED


def summarize(result: ConvergenceResult) -> Dict[str, Any]:
    counts = Counter(r.state.value for r in result.resources)
    return {
        "success": result.success,
        "exit_code": exit_code(result),
        "elapsed_seconds": result.elapsed_seconds,
        "total_retries": sum(r.retries for r in result.resources),
        "states": {k: v.value for k, v in result.states().items()},
        "counts": dict(counts),
        "resources": [
            {
                "identity": str(r.identity),
                "state": r.state.value,
                "outcome": r.outcome.value if r.outcome else None,
                "retries": r.retries,
                "elapsed_seconds": r.elapsed_seconds,
                "error_type": r.error_type,
                "error": r.error,
            }
            for r in result.resources
        ],
        "error_type": result.error_type,
        "error": result.error,
        "cancelled": result.cancelled,
    }


def render(result: ConvergenceResult, console: Optional[Console] = None, title: str = "Convergence") -> None:
    console = console or Console()
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Resource")
    table.add_column("State")
    table.add_column("Apply")
    table.add_column("Retries", justify="right")
    table.add_column("Elapsed", justify="right")
    table.add_column("Detail")

    for i, r in enumerate(result.resources, start=1):
        style = _STATE_STYLES.get(r.state, "")
        table.add_row(
            str(i),
            str(r.identity),
            f"[{style}]{r.state.value}[/{style}]" if style else r.state.value,
            r.outcome.value if r.outcome else "-",
            str(r.retries),
            f"{r.elapsed_seconds:.1f}s",
            escape(r.error or ""),
        )
    console.print(table)

    if result.error:
        console.print(f"[red]{result.error_type}: {escape(result.error)}[/red]")
    code = exit_code(result)
    verdict = "[green]converged[/green]" if code == EXIT_SUCCESS else "[red]not converged[/red]"
    console.print(f"{verdict} in {result.elapsed_seconds:.1f}s (exit code {code})")
