"""Comment deduplication and pull request review submission."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from lint_review.github_client import (
    CommentIndex,
    RepositoryRef,
    comment_index_key,
    repo_api_url,
    validate_commit_id,
    validate_pr_number,
)
from lint_review.output import DEFAULT_SCANNER_NAME, format_comment_body, render_review_body
from lint_review.schema import (
    Finding,
    ReviewCommentPayload,
    ReviewEvent,
    ReviewPayload,
    SubmissionStatus,
)
from lint_review.transport import HeaderCollector, HttpTransport, RawResponse

logger = logging.getLogger(__name__)

COMMENT_MARKUP_TOKENS = ("**", "Warning", "Error")
_FINDINGS_ADAPTER = TypeAdapter(list[Finding])


class FindingsFileError(ValueError):
    """Raised when a findings file cannot be read or does not match the schema."""


def load_findings(path: Path | str) -> list[Finding]:
    """Load a JSON array of findings produced by the linter wrapper."""
    findings_path = Path(path)
    try:
        raw_text = findings_path.read_text(encoding="utf-8")
    except OSError as error:
        raise FindingsFileError(f"Cannot read findings file '{findings_path}': {error}") from error
    try:
        return _FINDINGS_ADAPTER.validate_json(raw_text)
    except ValidationError as error:
        raise FindingsFileError(
            f"Findings file '{findings_path}' is not a valid findings array: {error}"
        ) from error


def tally_findings(findings: Iterable[Finding]) -> dict[str, int]:
    """Count findings per level, in order of first occurrence."""
    stats: dict[str, int] = {}
    for finding in findings:
        stats[finding.level] = stats.get(finding.level, 0) + 1
    return stats


def _normalize_posted_body(body: str) -> str:
    """Strip the markup added by ``format_comment_body`` from a posted comment."""
    for token in COMMENT_MARKUP_TOKENS:
        body = body.replace(token, "")
    return body.lstrip(": ")


def comment_already_posted(
    path: str,
    line: int,
    candidate_text: str,
    index: CommentIndex,
) -> bool:
    """Return whether an equivalent comment already exists at ``path:line``.

    The check is textual: the posted body with its level markup removed must
    equal the candidate text, ignoring case.
    """
    bucket = index.get(comment_index_key(path, line))
    if not bucket:
        return False

    candidate = candidate_text.lower()
    for comment in bucket:
        if _normalize_posted_body(comment.body).lower() == candidate:
            return True
    return False


def filter_unposted_findings(findings: Iterable[Finding], index: CommentIndex) -> list[Finding]:
    """Drop findings that have already been posted as review comments."""
    remaining: list[Finding] = []
    for finding in findings:
        if comment_already_posted(finding.file_name, finding.file_line, finding.message, index):
            logger.debug(
                "Skipping finding already posted: file=%s line=%d",
                finding.file_name,
                finding.file_line,
            )
            continue
        remaining.append(finding)
    return remaining


def filter_findings_for_files(
    findings: Iterable[Finding], file_names: Iterable[str]
) -> list[Finding]:
    """Keep only findings on files touched by the commit."""
    allowed = set(file_names)
    return [finding for finding in findings if finding.file_name in allowed]


def choose_review_event(stats: Mapping[str, int]) -> ReviewEvent:
    """Request changes when any error-level finding exists, otherwise comment."""
    if stats.get("error"):
        return ReviewEvent.REQUEST_CHANGES
    return ReviewEvent.COMMENT


def build_review_payload(
    *,
    commit_id: str,
    findings: Sequence[Finding],
    stats: Mapping[str, int],
    scanner_name: str = DEFAULT_SCANNER_NAME,
) -> ReviewPayload:
    """Build the review submission body for a set of findings."""
    return ReviewPayload(
        commit_id=commit_id,
        body=render_review_body(stats, scanner_name=scanner_name),
        event=choose_review_event(stats),
        comments=[
            ReviewCommentPayload(
                body=format_comment_body(finding),
                position=finding.file_line,
                path=finding.file_name,
            )
            for finding in findings
        ],
    )


def _parse_retry_after(headers: Mapping[str, list[str]]) -> int | None:
    """Return a positive Retry-After value in seconds, if present."""
    values = headers.get("retry-after")
    if not values:
        return None
    try:
        seconds = int(values[0])
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return seconds


def _status_code_from_headers(headers: Mapping[str, list[str]], response: RawResponse) -> int:
    """Read the status code from drained headers, falling back to the response."""
    status = headers.get("status")
    if status:
        try:
            return int(status[0])
        except ValueError:
            return 0
    return response.status_code


def submit_review(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
    pr_number: int,
    commit_id: str,
    findings: Sequence[Finding],
    stats: Mapping[str, int],
    dry_run: bool,
    scanner_name: str = DEFAULT_SCANNER_NAME,
) -> SubmissionStatus:
    """Post findings as one pull request review.

    A non-200 answer is not fatal. When GitHub sends a positive Retry-After the
    call waits that long plus one second and returns ``RATE_LIMITED`` without
    resubmitting; any other failure is logged and reported as ``FAILED``.
    """
    pr_number = validate_pr_number(pr_number)
    commit_id = validate_commit_id(commit_id)
    logger.info(
        "%s submit comment(s) to GitHub about issue(s): repo=%s pr=%d commit=%s "
        "comments=%d stats=%s dry_run=%s",
        "Would" if dry_run else "About to",
        repo.full_name,
        pr_number,
        commit_id,
        len(findings),
        dict(stats),
        dry_run,
    )
    if dry_run:
        return SubmissionStatus.DRY_RUN

    payload = build_review_payload(
        commit_id=commit_id,
        findings=findings,
        stats=stats,
        scanner_name=scanner_name,
    )
    url = f"{repo_api_url(transport, repo)}/pulls/{pr_number}/reviews"
    collector = HeaderCollector()
    response = transport.send(
        url,
        "POST",
        body=payload.model_dump_json().encode("utf-8"),
        header_callback=collector,
    )
    headers = collector.drain()

    status_code = _status_code_from_headers(headers, response)
    outcome = SubmissionStatus.SUBMITTED
    if status_code != 200:
        retry_after = _parse_retry_after(headers)
        if retry_after is not None:
            logger.warning(
                "GitHub asked us to retry in %d seconds, waiting: repo=%s pr=%d",
                retry_after,
                repo.full_name,
                pr_number,
            )
            transport.pause(retry_after + 1)
            outcome = SubmissionStatus.RATE_LIMITED
        else:
            logger.error(
                "GitHub reported an unknown error: repo=%s pr=%d headers=%s body=%s",
                repo.full_name,
                pr_number,
                headers,
                response.body.decode("utf-8", errors="replace"),
            )
            outcome = SubmissionStatus.FAILED

    transport.pause(transport.pacing.post_submit_seconds)
    return outcome
