"""Meta build orchestrator: dependency-ordered, cached package builds."""

from .cache import BuildRecord, BuildRecordStore, RecordStatus, fingerprint
from .config import OrchestratorConfig, load_config
from .errors import (
    BuildStepError,
    CacheError,
    CommandCancelledError,
    ConfigError,
    DependencyCycleError,
    DuplicatePackageError,
    FetchError,
    FetchInterruptedError,
    GraphError,
    ManifestError,
    NetworkFailureError,
    ParseError,
    QpkgError,
    SourceNotFoundError,
    UnknownDependencyError,
)
from .executor import BuildExecutor, OutcomeStatus, PackageOutcome, PackageState, RunReport
from .fetch import ResolvedSource, SourceFetcher
from .graph import Package, PackageGraph, build_graph
from .manifest import PackageDeclaration, load_manifest, to_packages
from .process import CancelToken, CommandResult, SubprocessRunner
from .source import GitSource, SourceSpec, UrlSource, parse_source
from .workspace import Workspace

__all__ = [
    "BuildExecutor",
    "BuildRecord",
    "BuildRecordStore",
    "BuildStepError",
    "CacheError",
    "CancelToken",
    "CommandCancelledError",
    "CommandResult",
    "ConfigError",
    "DependencyCycleError",
    "DuplicatePackageError",
    "FetchError",
    "FetchInterruptedError",
    "GitSource",
    "GraphError",
    "ManifestError",
    "NetworkFailureError",
    "OrchestratorConfig",
    "OutcomeStatus",
    "Package",
    "PackageDeclaration",
    "PackageGraph",
    "PackageOutcome",
    "PackageState",
    "ParseError",
    "QpkgError",
    "RecordStatus",
    "ResolvedSource",
    "RunReport",
    "SourceFetcher",
    "SourceNotFoundError",
    "SourceSpec",
    "SubprocessRunner",
    "UnknownDependencyError",
    "UrlSource",
    "Workspace",
    "build_graph",
    "fingerprint",
    "load_config",
    "load_manifest",
    "parse_source",
    "to_packages",
]
