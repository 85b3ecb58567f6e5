import pytest

from qpkg.errors import ParseError
from qpkg.source import GitSource, UrlSource, parse_source


@pytest.mark.parametrize(
    ("descriptor", "expected"),
    [
        ("https://host/path/file.ext", UrlSource(location="https://host/path/file.ext")),
        (
            "https://host/path/repo.git",
            GitSource(location="https://host/path/repo.git", reference=None, shallow=True),
        ),
        (
            "https://host/path/repo.git:branch",
            GitSource(location="https://host/path/repo.git", reference="branch", shallow=True),
        ),
        (
            "https://host/path/repo.git:,full",
            GitSource(location="https://host/path/repo.git", reference=None, shallow=False),
        ),
        (
            "https://host/path/repo.git:branch,full",
            GitSource(location="https://host/path/repo.git", reference="branch", shallow=False),
        ),
    ],
)
def test_parse_recognizes_descriptor_forms(descriptor: str, expected: object) -> None:
    parsed = parse_source(descriptor)

    assert parsed == expected
    assert parsed.descriptor == descriptor


def test_parse_empty_ref_with_full_means_default_branch() -> None:
    assert parse_source("https://x/y.git:,full") == GitSource(
        location="https://x/y.git",
        reference=None,
        shallow=False,
    )


def test_parse_trailing_colon_is_default_branch_shallow() -> None:
    parsed = parse_source("https://x/y.git:")

    assert parsed == GitSource(location="https://x/y.git")
    assert parsed.descriptor == "https://x/y.git"


def test_full_suffix_is_case_sensitive() -> None:
    with pytest.raises(ParseError):
        parse_source("https://x/y.git:main,FULL")


def test_git_marker_requires_path_segment_end() -> None:
    parsed = parse_source("https://host/user.github.io/archive.tar.gz")
    mirrored = parse_source("https://mirror.git:8443/pkgs/file.tar.gz")
    mirrored_repo = parse_source("https://mirror.git:8443/pkgs/repo.git:main")

    assert isinstance(parsed, UrlSource)
    assert mirrored == UrlSource(location="https://mirror.git:8443/pkgs/file.tar.gz")
    assert mirrored_repo == GitSource(
        location="https://mirror.git:8443/pkgs/repo.git",
        reference="main",
    )


def test_scp_style_and_local_git_locations_are_accepted() -> None:
    scp = parse_source("git@github.com:org/repo.git:v1.0")
    local = parse_source("/srv/git/repo.git")

    assert scp == GitSource(location="git@github.com:org/repo.git", reference="v1.0")
    assert local == GitSource(location="/srv/git/repo.git")


def test_pinned_detects_full_commit_ids() -> None:
    commit = "0123456789abcdef0123456789abcdef01234567"

    assert parse_source(f"https://x/y.git:{commit}").pinned is True
    assert parse_source("https://x/y.git:main").pinned is False
    assert parse_source("https://x/y.git").pinned is False


def test_url_filename_is_last_path_segment() -> None:
    parsed = parse_source("https://host/dl/zlib-1.3.1.tar.gz?mirror=1")

    assert isinstance(parsed, UrlSource)
    assert parsed.filename == "zlib-1.3.1.tar.gz"


@pytest.mark.parametrize(
    "descriptor",
    [
        "",
        "   ",
        "not a url",
        "host/path/file.tar.gz",
        "gopher://host/file.tar.gz",
        "https://",
        "svn://host/repo.git",
        "https://x/y.git:a,b",
        "https://x/y.git:a:b",
    ],
)
def test_parse_rejects_malformed_descriptors(descriptor: str) -> None:
    with pytest.raises(ParseError) as excinfo:
        parse_source(descriptor)

    assert excinfo.value.kind == "malformed"
    assert excinfo.value.code == "E_PARSE"


def test_matches_commit_accepts_abbreviated_ids() -> None:
    commit = "0123456789abcdef0123456789abcdef01234567"

    assert parse_source("https://x/y.git:0123abc").matches_commit(commit) is False
    assert parse_source("https://x/y.git:01234567").matches_commit(commit) is True
    assert parse_source("https://x/y.git:012").matches_commit(commit) is False
    assert parse_source("https://x/y.git:main").matches_commit(commit) is False
