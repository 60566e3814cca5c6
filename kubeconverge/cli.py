from __future__ import annotations

import json
import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.markup import escape

from .config import settings
from .controller import Controller
from .errors import ConvergeError, CyclicDependency, ManifestError
from .k8s_client import K8sClient
from .manifests import load_manifest_set
from .readiness import is_ready
from .reporter import EXIT_CYCLE, EXIT_FAILED, EXIT_SUCCESS, exit_code, render, summarize
from .resolver import resolve_order
from .schemas import ResourceIdentity
from .state import load_result, save_result

app = typer.Typer(help="Apply a Manifest Set in dependency order and verify it converges.")
console = Console()
logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def _get_client(namespace: Optional[str] = None) -> K8sClient:
    return K8sClient(namespace=namespace)


def _client_or_exit(namespace: Optional[str] = None):
    try:
        return _get_client(namespace)
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_FAILED)


@contextmanager
def _cancel_on_signals(event: threading.Event) -> Iterator[None]:
    """SIGINT/SIGTERM set ``event`` so the controller can stop its current wait."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, _frame):
        logger.warning("Received signal %d, cancelling run", signum)
        event.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _load_or_exit(manifest_dir: Path, namespace: Optional[str]):
    try:
        return load_manifest_set(manifest_dir, default_namespace=namespace)
    except ManifestError as e:
        console.print(f"[red]Manifest error: {escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def deploy(
    manifest_dir: Path = typer.Argument(..., help="Directory holding the Manifest Set."),
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n", help="Default namespace for manifests."),
    poll_interval: Optional[float] = typer.Option(None, "--poll-interval", min=0.0, help="Seconds between readiness checks."),
    timeout_scale: float = typer.Option(1.0, "--timeout-scale", min=0.01, help="Multiplier on per-kind readiness timeouts."),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0.0, help="Readiness timeout for resources without their own timeoutSeconds."),
    retry_attempts: Optional[int] = typer.Option(None, "--retry-attempts", min=1, help="Max apply attempts for transient errors."),
    state_file: Optional[Path] = typer.Option(None, "--state-file", help="Where to store the run result."),
    json_out: bool = typer.Option(False, "--json", help="Print the summary as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Apply every resource in dependency order, waiting for each to become ready."""
    _configure_logging(verbose)
    specs = _load_or_exit(manifest_dir, namespace)
    try:
        resolve_order(specs)
    except CyclicDependency as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_CYCLE)
    client = _client_or_exit(namespace)

    cancel = threading.Event()
    controller = Controller(
        client,
        poll_interval=poll_interval,
        retry_attempts=retry_attempts,
        timeout_scale=timeout_scale,
        timeout_override=timeout,
        cancel_event=cancel,
    )
    with _cancel_on_signals(cancel):
        result = controller.run(specs, manifest_dir=str(manifest_dir))

    path = save_result(result, state_file)
    logger.debug("Result written to %s", path)
    if json_out:
        console.print_json(json.dumps(summarize(result)))
    else:
        render(result, console, title=f"deploy {manifest_dir}")
    raise typer.Exit(code=exit_code(result))


@app.command()
def plan(
    manifest_dir: Path = typer.Argument(..., help="Directory holding the Manifest Set."),
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n"),
) -> None:
    """Print the resolved apply order without touching the cluster."""
    specs = _load_or_exit(manifest_dir, namespace)
    try:
        ordered = resolve_order(specs)
    except CyclicDependency as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_CYCLE)
    for i, spec in enumerate(ordered, start=1):
        deps = ", ".join(str(d) for d in spec.depends_on) or "-"
        console.print(f"{i:>3}. {spec.identity}  [dim](after: {deps})[/dim]")


@app.command()
def status(
    state_file: Optional[Path] = typer.Option(None, "--state-file"),
    json_out: bool = typer.Option(False, "--json", help="Print the summary as JSON."),
    live: bool = typer.Option(False, "--live", help="Also query current readiness and usage."),
) -> None:
    """Show the result of the last deploy."""
    result = load_result(state_file)
    if result is None:
        console.print("[yellow]No previous run recorded.[/yellow]")
        raise typer.Exit(code=EXIT_FAILED)

    if json_out:
        console.print_json(json.dumps(summarize(result)))
    else:
        render(result, console, title=f"last run ({result.manifest_dir or '?'})")

    if live:
        client = _client_or_exit()
        for identity in result.order:
            try:
                current = client.get_resource_status(identity)
                usage = client.get_metrics(identity)
            except ConvergeError as e:
                console.print(f"{identity}: [red]{escape(e.message)}[/red]")
                continue
            state = "ready" if is_ready(current) else ("not-ready" if current.exists else "absent")
            console.print(
                f"{identity}: {state}  cpu={usage.cpu_millicores:.0f}m  "
                f"mem={usage.memory_bytes / (1024 * 1024):.1f}Mi  pods={usage.pods}"
            )
    raise typer.Exit(code=EXIT_SUCCESS)


@app.command()
def teardown(
    manifest_dir: Optional[Path] = typer.Argument(None, help="Manifest Set to delete; defaults to the last run."),
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n"),
    state_file: Optional[Path] = typer.Option(None, "--state-file"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Delete resources in reverse dependency order."""
    _configure_logging(verbose)
    order: List[ResourceIdentity]
    if manifest_dir is not None:
        specs = _load_or_exit(manifest_dir, namespace)
        try:
            order = [s.identity for s in resolve_order(specs)]
        except CyclicDependency as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            raise typer.Exit(code=EXIT_CYCLE)
    else:
        result = load_result(state_file)
        if result is None:
            console.print("[yellow]No previous run recorded; pass a manifest directory.[/yellow]")
            raise typer.Exit(code=EXIT_FAILED)
        order = result.order

    client = _client_or_exit(namespace)
    cancel = threading.Event()
    controller = Controller(client, cancel_event=cancel)
    with _cancel_on_signals(cancel):
        outcomes = controller.teardown(order)

    for identity, outcome in outcomes.items():
        colour = "red" if outcome.startswith("error") else "green"
        console.print(f"{identity}: [{colour}]{outcome}[/{colour}]")
    failed = any(o.startswith("error") or o == "cancelled" for o in outcomes.values())
    raise typer.Exit(code=EXIT_FAILED if failed else EXIT_SUCCESS)


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
