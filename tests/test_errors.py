from qpkg.errors import (
    BuildStepError,
    CommandCancelledError,
    DependencyCycleError,
    ErrorCode,
    FetchError,
    FetchInterruptedError,
    GraphError,
    NetworkFailureError,
    QpkgError,
    SourceNotFoundError,
)


def test_error_to_dict_carries_code_hint_and_context() -> None:
    error = QpkgError(
        "Something broke.",
        code=ErrorCode.CACHE,
        hint="Try again.",
        context={"package": "zlib"},
    )

    payload = error.to_dict()

    assert payload["code"] == "E_CACHE"
    assert payload["hint"] == "Try again."
    assert payload["context"] == {"package": "zlib"}
    assert str(payload["message"]).startswith("Something broke.")
    assert error.message == "Something broke."


def test_str_includes_hint_and_non_empty_context() -> None:
    error = QpkgError("Broken.", code=ErrorCode.FETCH, hint="Check it.", context={"url": "x", "ref": ""})

    assert str(error) == "Broken.\nHint: Check it.\n  url: x"


def test_fetch_failures_declare_retryability() -> None:
    assert NetworkFailureError("down").retryable is True
    assert FetchInterruptedError("stopped").retryable is True
    assert SourceNotFoundError("gone").retryable is False
    assert FetchError("other").retryable is False
    assert isinstance(SourceNotFoundError("gone"), FetchError)


def test_cycle_error_is_a_graph_error_with_path() -> None:
    error = DependencyCycleError(["a", "b", "a"])

    assert isinstance(error, GraphError)
    assert error.path == ("a", "b", "a")
    assert error.context["cycle"] == "a -> b -> a"
    assert error.code == "E_GRAPH"


def test_build_step_error_records_step_and_status() -> None:
    error = BuildStepError(
        "build step 2 exited with status 7",
        step="make install",
        returncode=7,
        context={"package": "zlib"},
    )

    assert error.returncode == 7
    assert error.context == {"step": "make install", "returncode": "7", "package": "zlib"}


def test_cancelled_error_has_default_message() -> None:
    assert CommandCancelledError().message == "Operation cancelled."
