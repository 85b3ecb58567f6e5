"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    CONFIG = "E_CONFIG"
    MANIFEST = "E_MANIFEST"
    PARSE = "E_PARSE"
    GRAPH = "E_GRAPH"
    FETCH = "E_FETCH"
    BUILD_STEP = "E_BUILD_STEP"
    CACHE = "E_CACHE"
    CANCELLED = "E_CANCELLED"


class QpkgError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ConfigError(QpkgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIG, hint=hint, context=context)


class ManifestError(QpkgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.MANIFEST, hint=hint, context=context)


class ParseError(QpkgError):
    """A source descriptor could not be parsed.

    ``kind`` is always ``"malformed"``; it exists so callers can match on
    the failure class without string-comparing messages.
    """

    kind = "malformed"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PARSE, hint=hint, context=context)


class GraphError(QpkgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.GRAPH, hint=hint, context=context)


class DuplicatePackageError(GraphError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Package `{name}` is declared more than once.",
            hint="Package names form a single global namespace; rename or drop one declaration.",
            context={"package": name},
        )
        self.name = name


class UnknownDependencyError(GraphError):
    def __init__(self, name: str, *, dependent: str) -> None:
        super().__init__(
            f"Package `{dependent}` depends on undeclared package `{name}`.",
            hint="Declare the missing package or remove it from the dependency list.",
            context={"package": dependent, "dependency": name},
        )
        self.name = name
        self.dependent = dependent


class DependencyCycleError(GraphError):
    def __init__(self, path: Sequence[str]) -> None:
        self.path = tuple(path)
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(self.path),
            hint="Break the cycle by removing one of the listed dependency edges.",
            context={"cycle": " -> ".join(self.path)},
        )


class FetchError(QpkgError):
    """Base class for source acquisition failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.FETCH, hint=hint, context=context)


class NetworkFailureError(FetchError):
    retryable = True


class SourceNotFoundError(FetchError):
    retryable = False


class FetchInterruptedError(FetchError):
    """The fetch stopped part-way; the destination was discarded."""

    retryable = True


class BuildStepError(QpkgError):
    def __init__(
        self,
        message: str,
        *,
        step: str,
        returncode: int,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {"step": step, "returncode": str(returncode)}
        merged.update(context or {})
        super().__init__(message, code=ErrorCode.BUILD_STEP, hint=hint, context=merged)
        self.step = step
        self.returncode = returncode


class CacheError(QpkgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CACHE, hint=hint, context=context)


class CommandCancelledError(QpkgError):
    def __init__(
        self,
        message: str = "Operation cancelled.",
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CANCELLED, hint=hint, context=context)


__all__ = [
    "BuildStepError",
    "CacheError",
    "CommandCancelledError",
    "ConfigError",
    "DependencyCycleError",
    "DuplicatePackageError",
    "ErrorCode",
    "FetchError",
    "FetchInterruptedError",
    "GraphError",
    "ManifestError",
    "NetworkFailureError",
    "ParseError",
    "QpkgError",
    "SourceNotFoundError",
    "UnknownDependencyError",
]
