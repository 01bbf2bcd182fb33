"""Scan orchestration: fetch, deduplicate and submit findings for one commit."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from lint_review.github_client import (
    CommitInfo,
    FileFetchSession,
    GitHubInputError,
    RepositoryRef,
    fetch_commit_info,
    fetch_committed_file,
    fetch_pull_request_comments,
    resolve_implicated_pull_requests,
)
from lint_review.output import DEFAULT_SCANNER_NAME
from lint_review.review import (
    filter_findings_for_files,
    filter_unposted_findings,
    submit_review,
    tally_findings,
)
from lint_review.schema import Finding, SubmissionStatus
from lint_review.transport import HttpTransport

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScanResult:
    """Summary of one scan run."""

    commit_id: str
    implicated_prs: tuple[int, ...] = ()
    findings_total: int = 0
    findings_new: int = 0
    stats: dict[str, int] = field(default_factory=dict)
    submissions: dict[int, SubmissionStatus] = field(default_factory=dict)


def run_scan(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
    commit_id: str,
    findings: Sequence[Finding],
    dry_run: bool,
    scanner_name: str = DEFAULT_SCANNER_NAME,
) -> ScanResult:
    """Post not-yet-posted findings to every open pull request containing the commit."""
    result = ScanResult(commit_id=commit_id, findings_total=len(findings))

    commit_info = fetch_commit_info(transport=transport, repo=repo, commit_id=commit_id)
    implicated = resolve_implicated_pull_requests(
        transport=transport, repo=repo, commit_id=commit_id
    )
    result.implicated_prs = tuple(sorted(implicated))
    if not implicated:
        logger.info(
            "No open pull requests implicated, nothing to submit: repo=%s commit=%s",
            repo.full_name,
            commit_id,
        )
        return result

    comment_index = fetch_pull_request_comments(
        transport=transport,
        repo=repo,
        commit_id=commit_id,
        since=commit_info.committed_at,
    )
    scoped = filter_findings_for_files(findings, (f.filename for f in commit_info.files))
    new_findings = filter_unposted_findings(scoped, comment_index)
    result.findings_new = len(new_findings)
    if not new_findings:
        logger.info(
            "All findings already posted, nothing to submit: repo=%s commit=%s",
            repo.full_name,
            commit_id,
        )
        return result

    result.stats = tally_findings(new_findings)
    for pr_number in result.implicated_prs:
        result.submissions[pr_number] = submit_review(
            transport=transport,
            repo=repo,
            pr_number=pr_number,
            commit_id=commit_id,
            findings=new_findings,
            stats=result.stats,
            dry_run=dry_run,
            scanner_name=scanner_name,
        )
    return result


def fetch_commit_files(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
    commit_info: CommitInfo,
    output_dir: Path,
    session: FileFetchSession,
) -> list[Path]:
    """Write every file present after the commit into ``output_dir``."""
    root = output_dir.resolve()
    written: list[Path] = []
    for commit_file in commit_info.files:
        if commit_file.status == "removed":
            continue
        target = (root / commit_file.filename).resolve()
        if not target.is_relative_to(root):
            raise GitHubInputError(
                f"Refusing to write '{commit_file.filename}' outside the output directory."
            )

        contents = fetch_committed_file(
            transport=transport,
            repo=repo,
            commit_id=commit_info.sha,
            file_name=commit_file.filename,
            session=session,
        )
        if contents is None:
            logger.warning(
                "File not found on GitHub: repo=%s commit=%s file=%s",
                repo.full_name,
                commit_info.sha,
                commit_file.filename,
            )
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(contents)
        written.append(target)
    return written
