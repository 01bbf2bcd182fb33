"""Unit tests for scan orchestration."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from lint_review.github_client import CommitFile, CommitInfo, FileFetchSession, RepositoryRef
from lint_review.local_repo import LocalGitRepository
from lint_review.scan import fetch_commit_files, run_scan
from lint_review.schema import Finding, SubmissionStatus
from lint_review.transport import HttpTransport, PacingPolicy, build_http_client

COMMIT = "f" * 40
OTHER_COMMIT = "0" * 40
REPO = RepositoryRef(owner="acme", name="rocket")


def make_transport(
    handler: Callable[[httpx.Request], httpx.Response], sleeper: object
) -> HttpTransport:
    """Create a zero-delay transport backed by mock HTTP handling."""
    client = build_http_client("secret-token", transport=httpx.MockTransport(handler))
    return HttpTransport(
        client,
        sleeper=sleeper,  # type: ignore[arg-type]
        pacing=PacingPolicy.immediate(),
    )


def make_github_handler(
    *,
    pulls: list[dict[str, object]],
    comments: list[dict[str, object]],
    posted: list[tuple[str, dict[str, object]]],
) -> Callable[[httpx.Request], httpx.Response]:
    """Route every endpoint a scan touches to fixed payloads."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == f"/repos/acme/rocket/commits/{COMMIT}":
            return httpx.Response(
                status_code=200,
                json={
                    "sha": COMMIT,
                    "commit": {"committer": {"date": "2024-03-01T10:00:00Z"}},
                    "files": [{"filename": "file.php", "status": "modified"}],
                },
            )
        if path == "/repos/acme/rocket/pulls":
            return httpx.Response(status_code=200, json=pulls)
        if path.endswith("/commits"):
            return httpx.Response(status_code=200, json=[{"sha": OTHER_COMMIT}])
        if path == "/repos/acme/rocket/pulls/comments":
            return httpx.Response(status_code=200, json=comments)
        if path.endswith("/reviews"):
            posted.append((path, json.loads(request.content)))
            return httpx.Response(status_code=200, json={"id": 1})
        raise AssertionError(f"Unexpected endpoint {path}")

    return handler


def make_findings() -> list[Finding]:
    return [
        Finding(file_name="file.php", file_line=12, level="warning", message="Unused variable $x"),
        Finding(file_name="file.php", file_line=20, level="error", message="Missing semicolon"),
        Finding(file_name="untouched.php", file_line=1, level="error", message="Not in commit"),
    ]


@pytest.mark.unit
def test_run_scan_posts_only_new_findings_to_implicated_prs(sleeper) -> None:
    posted: list[tuple[str, dict[str, object]]] = []
    handler = make_github_handler(
        pulls=[
            {"number": 5, "head": {"sha": COMMIT}},
            {"number": 6, "head": {"sha": OTHER_COMMIT}},
        ],
        comments=[
            {
                "path": "file.php",
                "position": 12,
                "body": "**Warning**: Unused variable $x",
                "original_commit_id": COMMIT,
            }
        ],
        posted=posted,
    )

    with make_transport(handler, sleeper) as transport:
        result = run_scan(
            transport=transport,
            repo=REPO,
            commit_id=COMMIT,
            findings=make_findings(),
            dry_run=False,
        )

    assert result.implicated_prs == (5,)
    assert result.findings_total == 3
    assert result.findings_new == 1
    assert result.stats == {"error": 1}
    assert result.submissions == {5: SubmissionStatus.SUBMITTED}
    assert len(posted) == 1
    path, payload = posted[0]
    assert path == "/repos/acme/rocket/pulls/5/reviews"
    assert payload["event"] == "REQUEST_CHANGES"
    assert payload["comments"] == [
        {"body": "**Error**: Missing semicolon", "position": 20, "path": "file.php"}
    ]


@pytest.mark.unit
def test_run_scan_without_implicated_prs_skips_comments_and_submission(sleeper) -> None:
    posted: list[tuple[str, dict[str, object]]] = []
    requested: list[str] = []
    inner = make_github_handler(pulls=[], comments=[], posted=posted)

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        return inner(request)

    with make_transport(handler, sleeper) as transport:
        result = run_scan(
            transport=transport,
            repo=REPO,
            commit_id=COMMIT,
            findings=make_findings(),
            dry_run=False,
        )

    assert result.implicated_prs == ()
    assert result.submissions == {}
    assert "/repos/acme/rocket/pulls/comments" not in requested
    assert posted == []


@pytest.mark.unit
def test_run_scan_dry_run_reports_without_posting(sleeper) -> None:
    posted: list[tuple[str, dict[str, object]]] = []
    handler = make_github_handler(
        pulls=[{"number": 5, "head": {"sha": COMMIT}}],
        comments=[],
        posted=posted,
    )

    with make_transport(handler, sleeper) as transport:
        result = run_scan(
            transport=transport,
            repo=REPO,
            commit_id=COMMIT,
            findings=make_findings(),
            dry_run=True,
        )

    assert result.submissions == {5: SubmissionStatus.DRY_RUN}
    assert result.stats == {"warning": 1, "error": 1}
    assert posted == []


@pytest.mark.unit
def test_fetch_commit_files_uses_local_checkout_and_skips_removed(
    sleeper, tmp_path: Path
) -> None:
    checkout = tmp_path / "checkout"
    (checkout / ".git").mkdir(parents=True)
    (checkout / ".git" / "HEAD").write_text(f"{COMMIT}\n", encoding="utf-8")
    (checkout / "src").mkdir()
    (checkout / "src" / "a.php").write_bytes(b"local-a")
    commit_info = CommitInfo(
        sha=COMMIT,
        committed_at="2024-03-01T10:00:00Z",
        files=(
            CommitFile(filename="src/a.php", status="modified"),
            CommitFile(filename="src/gone.php", status="removed"),
        ),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("Local checkout is in sync; GitHub must not be asked")

    output_dir = tmp_path / "out"
    with make_transport(handler, sleeper) as transport:
        written = fetch_commit_files(
            transport=transport,
            repo=REPO,
            commit_info=commit_info,
            output_dir=output_dir,
            session=FileFetchSession(local_repo=LocalGitRepository(checkout)),
        )

    assert written == [(output_dir / "src" / "a.php").resolve()]
    assert (output_dir / "src" / "a.php").read_bytes() == b"local-a"
    assert not (output_dir / "src" / "gone.php").exists()
