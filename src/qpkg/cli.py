"""Command-line front end: ``qpkg build``, ``qpkg plan`` and ``qpkg status``."""

from __future__ import annotations

import argparse
import signal
import sys
from collections.abc import Sequence
from pathlib import Path
from types import FrameType

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from qpkg.cache import BuildRecordStore
from qpkg.config import OrchestratorConfig, load_config
from qpkg.errors import ManifestError, QpkgError
from qpkg.executor import BuildExecutor, OutcomeStatus, RunReport
from qpkg.fetch import SourceFetcher
from qpkg.graph import PackageGraph, build_graph
from qpkg.manifest import load_manifest, to_packages
from qpkg.process import CancelToken, SubprocessRunner
from qpkg.workspace import Workspace

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

_STATUS_STYLES = {
    OutcomeStatus.BUILT: "green",
    OutcomeStatus.CACHED: "cyan",
    OutcomeStatus.FAILED: "bold red",
    OutcomeStatus.SKIPPED: "yellow",
    OutcomeStatus.CANCELLED: "magenta",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qpkg", description="Dependency-ordered, cached package builds")
    parser.add_argument("-c", "--config", type=Path, help="path to qpkg.toml")
    parser.add_argument("-m", "--manifest", type=Path, help="package manifest (overrides config)")
    subcommands = parser.add_subparsers(dest="command", required=True)

    build = subcommands.add_parser("build", help="fetch and build packages")
    build.add_argument("-j", "--workers", type=int, help="number of concurrent packages")
    build.add_argument("--force", action="append", default=[], metavar="NAME", help="rebuild NAME even if cached")
    build.add_argument("--offline", action="store_true", default=None, help="never access the network")
    build.add_argument("names", nargs="*", help="packages to build (default: all)")

    plan = subcommands.add_parser("plan", help="print the build order")
    plan.add_argument("names", nargs="*", help="packages to plan (default: all)")

    subcommands.add_parser("status", help="print persisted build records")
    return parser


def main(argv: Sequence[str] | None = None, *, console: Console | None = None) -> int:
    args = build_parser().parse_args(argv)
    console = console or Console()
    try:
        config = load_config(args.config)
        if args.command == "status":
            return _cmd_status(config, console)
        graph = _load_graph(config, manifest=args.manifest, names=args.names)
        if args.command == "plan":
            return _cmd_plan(graph, console)
        config = config.with_overrides(workers=args.workers, offline=args.offline)
        return _cmd_build(config, graph, force=args.force, console=console)
    except QpkgError as exc:
        console.print(f"[bold red]error[/] {escape(f'[{exc.code}] {exc}')}", highlight=False)
        return EXIT_USAGE
    except OSError as exc:
        console.print(f"[bold red]error[/] {escape(str(exc))}", highlight=False)
        return EXIT_USAGE


def _load_graph(config: OrchestratorConfig, *, manifest: Path | None, names: Sequence[str]) -> PackageGraph:
    manifest_path = manifest or config.manifest
    if manifest_path is None:
        raise ManifestError(
            "No package manifest given.",
            hint="Pass --manifest or set `manifest` under [general] in qpkg.toml.",
        )
    graph = build_graph(to_packages(load_manifest(manifest_path)))
    return graph.subgraph(names) if names else graph


def _cmd_plan(graph: PackageGraph, console: Console) -> int:
    for position, name in enumerate(graph.order, start=1):
        dependencies = ", ".join(graph.dependencies_of(name)) or "-"
        console.print(f"{position:>4}  {name}  [dim]({dependencies})[/]", highlight=False)
    return EXIT_OK


def _cmd_status(config: OrchestratorConfig, console: Console) -> int:
    workspace = Workspace(root=config.workspace)
    store = BuildRecordStore(workspace.records_path)
    table = Table(title="Build records")
    table.add_column("package")
    table.add_column("status")
    table.add_column("fingerprint")
    table.add_column("artifact")
    for name, record in store.records().items():
        table.add_row(name, record.status.value, record.fingerprint[:16], record.artifact_location)
    console.print(table)
    return EXIT_OK


def _cmd_build(
    config: OrchestratorConfig,
    graph: PackageGraph,
    *,
    force: Sequence[str],
    console: Console,
) -> int:
    for name in force:
        graph.package(name)
    workspace = Workspace.create(config.workspace)
    runner = SubprocessRunner()
    cancel = CancelToken()
    executor = BuildExecutor(
        workspace=workspace,
        store=BuildRecordStore(workspace.records_path),
        fetcher=SourceFetcher(runner=runner, offline=config.offline),
        runner=runner,
        workers=config.worker_limit,
        fetch_retries=config.fetch_retries,
        env=config.env,
        variables=config.variables,
        force=force,
        cancel=cancel,
    )

    def _request_cancel(signum: int, frame: FrameType | None) -> None:
        cancel.cancel()

    previous = signal.signal(signal.SIGINT, _request_cancel)
    try:
        report = executor.run(graph)
    finally:
        signal.signal(signal.SIGINT, previous)

    render_report(report, console)
    summary = ", ".join(f"{state}={count}" for state, count in sorted(executor.logger.final_states().items()))
    console.print(f"[dim]final states: {summary}  log: {escape(str(workspace.run_log_path))}[/]", highlight=False)
    return EXIT_OK if report.ok else EXIT_FAILED


def render_report(report: RunReport, console: Console) -> None:
    table = Table(title="Build results")
    table.add_column("package")
    table.add_column("result")
    table.add_column("artifact")
    for name, outcome in report.outcomes.items():
        style = _STATUS_STYLES[outcome.status]
        artifact = str(outcome.artifact_location) if outcome.artifact_location else ""
        table.add_row(name, f"[{style}]{escape(outcome.describe())}[/]", artifact)
    console.print(table)
    if report.cancelled:
        console.print("[magenta]Run cancelled.[/]")


if __name__ == "__main__":
    sys.exit(main())
