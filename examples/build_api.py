"""Drive a build from Python instead of the ``qpkg`` command."""

from pathlib import Path

from qpkg import (
    BuildExecutor,
    BuildRecordStore,
    SourceFetcher,
    SubprocessRunner,
    Workspace,
    build_graph,
    load_config,
    load_manifest,
    to_packages,
)

HERE = Path(__file__).parent


def build_base_system() -> int:
    config = load_config(HERE / "qpkg.toml")
    graph = build_graph(to_packages(load_manifest(HERE / "packages.toml")))
    workspace = Workspace.create(config.workspace)
    runner = SubprocessRunner()
    executor = BuildExecutor(
        workspace=workspace,
        store=BuildRecordStore(workspace.records_path),
        fetcher=SourceFetcher(runner=runner),
        runner=runner,
        workers=config.worker_limit,
        fetch_retries=config.fetch_retries,
        env=config.env,
        variables=config.variables,
    )
    report = executor.run(graph)
    for name, outcome in report.outcomes.items():
        print(f"{name}: {outcome.describe()}")
    return report.exit_code


if __name__ == "__main__":
    raise SystemExit(build_base_system())
