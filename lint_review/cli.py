"""Typer CLI for posting lint findings to GitHub pull requests."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import httpx
import typer

from lint_review.github_client import (
    FileFetchSession,
    GitHubApiError,
    GitHubAuthError,
    GitHubInputError,
    build_http_transport,
    fetch_commit_info,
    parse_repo_full_name,
    resolve_implicated_pull_requests,
    validate_commit_id,
)
from lint_review.local_repo import LocalGitRepository
from lint_review.output import DEFAULT_SCANNER_NAME
from lint_review.review import FindingsFileError, load_findings
from lint_review.scan import fetch_commit_files, run_scan
from lint_review.transport import GitHubRetriesExhaustedError, HttpTransport, PacingPolicy

NO_PACING_ENV_VAR = "LINT_REVIEW_NO_PACING"
GIVE_UP_EXIT_CODE = 254

app = typer.Typer(help="Post static-analysis findings to GitHub pull requests as reviews.")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _pacing_from_env() -> PacingPolicy:
    """Return the pacing policy, disabling delays when requested."""
    if os.getenv(NO_PACING_ENV_VAR) == "1":
        return PacingPolicy.immediate()
    return PacingPolicy()


@contextmanager
def _github_errors() -> Iterator[None]:
    """Map library errors onto CLI exit codes."""
    try:
        yield
    except GitHubRetriesExhaustedError as error:
        typer.echo(f"Gave up talking to GitHub: {error}", err=True)
        raise typer.Exit(code=GIVE_UP_EXIT_CODE) from error
    except GitHubApiError as error:
        typer.echo(
            f"GitHub request failed: status={error.status_code} endpoint={error.endpoint}.",
            err=True,
        )
        raise typer.Exit(code=1) from error
    except (GitHubAuthError, GitHubInputError, FindingsFileError) as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error
    except httpx.HTTPError as error:
        typer.echo(f"GitHub request failed: network error ({error}).", err=True)
        raise typer.Exit(code=1) from error


def _open_transport(timeout_seconds: int) -> HttpTransport:
    return build_http_transport(timeout_seconds=timeout_seconds, pacing=_pacing_from_env())


@app.command("review")
def review_command(
    repo: Annotated[str, typer.Option(help="Repository in owner/repo format.")],
    commit: Annotated[str, typer.Option(help="Full 40-character commit id that was scanned.")],
    findings: Annotated[
        Path, typer.Option(help="JSON file with the findings produced by the linter.")
    ],
    dry_run: Annotated[bool, typer.Option(help="Log the review instead of posting it.")] = False,
    scanner_name: Annotated[
        str, typer.Option(help="Scanner name used in the review summary.")
    ] = DEFAULT_SCANNER_NAME,
    timeout_seconds: Annotated[
        int, typer.Option(help="GitHub connect timeout in seconds.")
    ] = 20,
    verbose: Annotated[bool, typer.Option(help="Log every step.")] = False,
) -> None:
    """Submit findings for a commit to every open pull request that contains it."""
    _configure_logging(verbose)
    with _github_errors():
        repo_ref = parse_repo_full_name(repo)
        commit_id = validate_commit_id(commit)
        loaded_findings = load_findings(findings)
        with _open_transport(timeout_seconds) as transport:
            result = run_scan(
                transport=transport,
                repo=repo_ref,
                commit_id=commit_id,
                findings=loaded_findings,
                dry_run=dry_run,
                scanner_name=scanner_name,
            )

    if not result.implicated_prs:
        typer.echo(f"No open pull requests contain {commit_id}.")
        return
    typer.echo(
        f"Findings: {result.findings_total} total, {result.findings_new} not yet posted."
    )
    for pr_number in result.implicated_prs:
        status = result.submissions.get(pr_number)
        typer.echo(f"PR #{pr_number}: {status.value if status else 'nothing to submit'}")


@app.command("implicated-prs")
def implicated_prs_command(
    repo: Annotated[str, typer.Option(help="Repository in owner/repo format.")],
    commit: Annotated[str, typer.Option(help="Full 40-character commit id.")],
    timeout_seconds: Annotated[
        int, typer.Option(help="GitHub connect timeout in seconds.")
    ] = 20,
    verbose: Annotated[bool, typer.Option(help="Log every step.")] = False,
) -> None:
    """Print open pull requests whose head or history contains the commit."""
    _configure_logging(verbose)
    with _github_errors():
        repo_ref = parse_repo_full_name(repo)
        commit_id = validate_commit_id(commit)
        with _open_transport(timeout_seconds) as transport:
            implicated = resolve_implicated_pull_requests(
                transport=transport, repo=repo_ref, commit_id=commit_id
            )

    for pr_number in sorted(implicated):
        typer.echo(str(pr_number))


@app.command("fetch-files")
def fetch_files_command(
    repo: Annotated[str, typer.Option(help="Repository in owner/repo format.")],
    commit: Annotated[str, typer.Option(help="Full 40-character commit id.")],
    output_dir: Annotated[Path, typer.Option(help="Directory receiving the committed files.")],
    local_git_repo: Annotated[
        Path | None,
        typer.Option(help="Local clone tried before GitHub when checked out at the commit."),
    ] = None,
    timeout_seconds: Annotated[
        int, typer.Option(help="GitHub connect timeout in seconds.")
    ] = 20,
    verbose: Annotated[bool, typer.Option(help="Log every step.")] = False,
) -> None:
    """Download every file touched by a commit, ready for a linter run."""
    _configure_logging(verbose)
    session = FileFetchSession(
        local_repo=LocalGitRepository(local_git_repo) if local_git_repo is not None else None
    )
    with _github_errors():
        repo_ref = parse_repo_full_name(repo)
        commit_id = validate_commit_id(commit)
        with _open_transport(timeout_seconds) as transport:
            commit_info = fetch_commit_info(transport=transport, repo=repo_ref, commit_id=commit_id)
            written = fetch_commit_files(
                transport=transport,
                repo=repo_ref,
                commit_info=commit_info,
                output_dir=output_dir,
                session=session,
            )

    for path in written:
        typer.echo(str(path))
