"""GitHub API fetchers, pagination and auth helpers."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import quote

from dotenv import load_dotenv

from lint_review.local_repo import LocalFileSource
from lint_review.schema import COMMIT_ID_PATTERN
from lint_review.transport import (
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    HttpTransport,
    PacingPolicy,
    RawResponse,
    Sleeper,
    build_http_client,
)

logger = logging.getLogger(__name__)

GITHUB_API_BASE_URL = "https://api.github.com"
GITHUB_RAW_BASE_URL = "https://raw.githubusercontent.com"
GITHUB_API_URL_ENV_VAR = "GITHUB_API_URL"
GITHUB_RAW_URL_ENV_VAR = "GITHUB_RAW_URL"
GITHUB_PAGE_SIZE = 30

T = TypeVar("T")
CommentIndex = dict[str, list["ReviewComment"]]


class GitHubAuthError(RuntimeError):
    """Raised when required GitHub authentication is missing."""


class GitHubInputError(ValueError):
    """Raised when repository, commit or PR input values are invalid."""


class GitHubApiError(RuntimeError):
    """Raised when a GitHub API request fails or returns an unexpected body."""

    def __init__(self, message: str, *, status_code: int, endpoint: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class GitHubRateLimitError(GitHubApiError):
    """Raised when GitHub API rate limiting prevents request completion."""


@dataclass(frozen=True, slots=True)
class RepositoryRef:
    """Repository coordinates used to build every URL."""

    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True, slots=True)
class CommitFile:
    """File touched by a commit."""

    filename: str
    status: str
    patch: str | None = None


@dataclass(frozen=True, slots=True)
class CommitInfo:
    """Normalized commit lookup result."""

    sha: str
    committed_at: str
    files: tuple[CommitFile, ...] = ()


@dataclass(frozen=True, slots=True)
class PullRequestSummary:
    """Open pull request number and its current head commit."""

    number: int
    head_sha: str


@dataclass(frozen=True, slots=True)
class ReviewComment:
    """Review comment already posted on a pull request."""

    path: str
    position: int | None
    body: str
    original_commit_id: str


@dataclass(slots=True)
class FileFetchSession:
    """Per-run state for committed file lookups.

    Once the local repository fails a lookup it is not consulted again for
    the rest of the run.
    """

    local_repo: LocalFileSource | None = None
    local_failed: bool = False


def _ensure_mapping(value: object, *, context: str) -> dict[str, Any]:
    """Ensure a response fragment is a JSON object."""
    if not isinstance(value, dict):
        raise GitHubApiError(
            f"Expected JSON object for {context}.",
            status_code=500,
            endpoint=context,
        )
    return value


def _require_str(payload: dict[str, Any], *, key: str, endpoint: str) -> str:
    """Read a required string field from payload."""
    value = payload.get(key)
    if not isinstance(value, str):
        raise GitHubApiError(
            f"Expected string field '{key}' in GitHub response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _require_int(payload: dict[str, Any], *, key: str, endpoint: str) -> int:
    """Read a required integer field from payload."""
    value = payload.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise GitHubApiError(
            f"Expected integer field '{key}' in GitHub response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _optional_int(payload: dict[str, Any], *, key: str, endpoint: str) -> int | None:
    """Read an integer field that may be null or absent."""
    if payload.get(key) is None:
        return None
    return _require_int(payload, key=key, endpoint=endpoint)


def _require_object(payload: dict[str, Any], *, key: str, endpoint: str) -> dict[str, Any]:
    """Read a required object field from payload."""
    value = payload.get(key)
    if not isinstance(value, dict):
        raise GitHubApiError(
            f"Expected object field '{key}' in GitHub response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _decode_json(body: bytes, *, endpoint: str) -> Any:
    """Decode a JSON response body, failing loudly on malformed content."""
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise GitHubApiError(
            "GitHub response body is not valid JSON.",
            status_code=500,
            endpoint=endpoint,
        ) from error


def _json_rows(body: bytes, *, endpoint: str) -> list[dict[str, Any]]:
    """Decode a JSON array of objects."""
    payload = _decode_json(body, endpoint=endpoint)
    if not isinstance(payload, list):
        raise GitHubApiError(
            "Expected JSON array in GitHub response.",
            status_code=500,
            endpoint=endpoint,
        )
    rows: list[dict[str, Any]] = []
    for item in payload:
        if not isinstance(item, dict):
            raise GitHubApiError(
                "Expected all array items to be JSON objects in GitHub response.",
                status_code=500,
                endpoint=endpoint,
            )
        rows.append(item)
    return rows


def _raise_http_error(response: RawResponse, endpoint: str) -> None:
    """Raise a typed error for a non-success GitHub API response."""
    status_code = response.status_code
    message = f"GitHub API request failed with status {status_code} for '{endpoint}'."
    if status_code == 429 or (status_code == 403 and response.header("retry-after")):
        raise GitHubRateLimitError(message, status_code=status_code, endpoint=endpoint)
    raise GitHubApiError(message, status_code=status_code, endpoint=endpoint)


def _get(transport: HttpTransport, url: str, *, allow_not_found: bool = False) -> RawResponse:
    """GET a URL and raise for error statuses (optionally letting 404 through)."""
    response = transport.send(url, "GET")
    if allow_not_found and response.status_code == 404:
        return response
    if response.status_code >= 400:
        _raise_http_error(response, url)
    return response


def repo_api_url(transport: HttpTransport, repo: RepositoryRef) -> str:
    """Build the API URL prefix for a repository."""
    return (
        f"{transport.api_base_url}/repos/"
        f"{quote(repo.owner, safe='')}/{quote(repo.name, safe='')}"
    )


def fetch_all_pages(
    transport: HttpTransport,
    url_for_page: Callable[[int], str],
    decode: Callable[[bytes, str], Sequence[T]],
    *,
    page_delay_seconds: float,
) -> list[T]:
    """Fetch pages 0, 1, 2, ... until one holds fewer than a full page of items.

    Every decoded item is kept in page order. The extra delay is applied after
    each page on top of the transport's own pacing.
    """
    items: list[T] = []
    page = 0
    while True:
        url = url_for_page(page)
        response = _get(transport, url)
        page_items = decode(response.body, url)
        items.extend(page_items)
        logger.debug(
            "Fetched page from GitHub: url=%s page=%d items=%d", url, page, len(page_items)
        )
        transport.pause(page_delay_seconds)
        if len(page_items) < GITHUB_PAGE_SIZE:
            return items
        page += 1


def _page_query(page: int) -> str:
    """GitHub pages are 1-based; our page index is 0-based."""
    return f"per_page={GITHUB_PAGE_SIZE}&page={page + 1}"


def fetch_commit_info(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
    commit_id: str,
) -> CommitInfo:
    """Fetch commit metadata and touched files from GitHub."""
    commit_id = validate_commit_id(commit_id)
    logger.info(
        "Fetching commit info from GitHub: repo=%s commit=%s", repo.full_name, commit_id
    )
    endpoint = f"{repo_api_url(transport, repo)}/commits/{quote(commit_id, safe='')}"
    response = _get(transport, endpoint)
    payload = _ensure_mapping(_decode_json(response.body, endpoint=endpoint), context=endpoint)

    commit_payload = _require_object(payload, key="commit", endpoint=endpoint)
    committer_payload = _require_object(commit_payload, key="committer", endpoint=endpoint)

    files_value = payload.get("files") or []
    if not isinstance(files_value, list):
        raise GitHubApiError(
            "Expected 'files' to be an array in GitHub response.",
            status_code=500,
            endpoint=endpoint,
        )
    files: list[CommitFile] = []
    for row in files_value:
        row = _ensure_mapping(row, context=endpoint)
        patch = row.get("patch")
        files.append(
            CommitFile(
                filename=_require_str(row, key="filename", endpoint=endpoint),
                status=_require_str(row, key="status", endpoint=endpoint),
                patch=patch if isinstance(patch, str) else None,
            )
        )

    return CommitInfo(
        sha=_require_str(payload, key="sha", endpoint=endpoint),
        committed_at=_require_str(committer_payload, key="date", endpoint=endpoint),
        files=tuple(files),
    )


def _fetch_local_file(
    session: FileFetchSession,
    *,
    repo: RepositoryRef,
    commit_id: str,
    file_name: str,
) -> bytes | None:
    """Try the local repository and mark it failed on any mismatch."""
    local_repo = session.local_repo
    if local_repo is None or session.local_failed:
        return None

    logger.info(
        "Fetching file from local Git repository: repo=%s commit=%s file=%s local_repo=%s",
        repo.full_name,
        commit_id,
        file_name,
        local_repo,
    )
    contents: bytes | None = None
    head_commit = local_repo.head_commit()
    if head_commit == commit_id:
        contents = local_repo.read_file(file_name)

    if contents is None:
        logger.info(
            "Skipping local Git repository, seems not to be in sync with current commit: "
            "repo=%s commit=%s file=%s local_head=%s",
            repo.full_name,
            commit_id,
            file_name,
            head_commit,
        )
        session.local_failed = True
    return contents


def fetch_committed_file(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
    commit_id: str,
    file_name: str,
    session: FileFetchSession | None = None,
) -> bytes | None:
    """Fetch a file as of a commit, preferring an in-sync local checkout.

    Returns ``None`` when GitHub does not know the file at that commit.
    """
    commit_id = validate_commit_id(commit_id)
    normalized_path = file_name.lstrip("/")
    if not normalized_path:
        raise GitHubInputError("Invalid file path ''. Expected a non-empty repository path.")

    if session is not None:
        local_contents = _fetch_local_file(
            session, repo=repo, commit_id=commit_id, file_name=normalized_path
        )
        if local_contents is not None:
            return local_contents

    logger.info(
        "Fetching file from GitHub: repo=%s commit=%s file=%s",
        repo.full_name,
        commit_id,
        normalized_path,
    )
    url = (
        f"{transport.raw_base_url}/"
        f"{quote(repo.owner, safe='')}/{quote(repo.name, safe='')}/"
        f"{quote(commit_id, safe='')}/{quote(normalized_path, safe='/')}"
    )
    response = _get(transport, url, allow_not_found=True)
    if response.status_code == 404:
        return None
    return response.body


def _decode_review_comments(body: bytes, endpoint: str) -> list[ReviewComment]:
    """Decode one page of pull request review comments."""
    comments: list[ReviewComment] = []
    for row in _json_rows(body, endpoint=endpoint):
        original_commit_id = row.get("original_commit_id")
        if not isinstance(original_commit_id, str):
            original_commit_id = ""
        comments.append(
            ReviewComment(
                path=_require_str(row, key="path", endpoint=endpoint),
                position=_optional_int(row, key="position", endpoint=endpoint),
                body=row.get("body") or "",
                original_commit_id=original_commit_id,
            )
        )
    return comments


def comment_index_key(path: str, position: int) -> str:
    """Build the ``path:position`` key used by the comment index."""
    return f"{path}:{position}"


def build_comment_index(comments: Sequence[ReviewComment], *, commit_id: str) -> CommentIndex:
    """Index line comments made against ``commit_id`` by ``path:position``."""
    index: CommentIndex = {}
    for comment in comments:
        if comment.position is None:
            continue
        if comment.original_commit_id != commit_id:
            continue
        index.setdefault(comment_index_key(comment.path, comment.position), []).append(comment)
    return index


def fetch_pull_request_comments(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
    commit_id: str,
    since: str,
) -> CommentIndex:
    """Fetch review comments created since a timestamp and index them."""
    commit_id = validate_commit_id(commit_id)
    logger.info(
        "Fetching pull request comments from GitHub: repo=%s commit=%s since=%s",
        repo.full_name,
        commit_id,
        since,
    )
    base_url = (
        f"{repo_api_url(transport, repo)}/pulls/comments"
        f"?sort=created&direction=asc&since={quote(since, safe='')}"
    )
    comments = fetch_all_pages(
        transport,
        lambda page: f"{base_url}&{_page_query(page)}",
        _decode_review_comments,
        page_delay_seconds=transport.pacing.comments_page_seconds,
    )
    return build_comment_index(comments, commit_id=commit_id)


def _decode_pull_requests(body: bytes, endpoint: str) -> list[PullRequestSummary]:
    """Decode one page of pull requests."""
    pulls: list[PullRequestSummary] = []
    for row in _json_rows(body, endpoint=endpoint):
        head_payload = _require_object(row, key="head", endpoint=endpoint)
        pulls.append(
            PullRequestSummary(
                number=_require_int(row, key="number", endpoint=endpoint),
                head_sha=_require_str(head_payload, key="sha", endpoint=endpoint),
            )
        )
    return pulls


def fetch_open_pull_requests(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
) -> list[PullRequestSummary]:
    """Fetch every open pull request of a repository."""
    logger.info("Fetching all open pull requests from GitHub: repo=%s", repo.full_name)
    base_url = f"{repo_api_url(transport, repo)}/pulls?state=open"
    return fetch_all_pages(
        transport,
        lambda page: f"{base_url}&{_page_query(page)}",
        _decode_pull_requests,
        page_delay_seconds=transport.pacing.pulls_page_seconds,
    )


def _decode_commit_shas(body: bytes, endpoint: str) -> list[str]:
    rows = _json_rows(body, endpoint=endpoint)
    return [_require_str(row, key="sha", endpoint=endpoint) for row in rows]


def fetch_pull_request_commits(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
    pr_number: int,
) -> list[str]:
    """Fetch the ids of all commits that are part of a pull request."""
    pr_number = validate_pr_number(pr_number)
    logger.info(
        "Fetching all commits of pull request #%d from GitHub: repo=%s",
        pr_number,
        repo.full_name,
    )
    base_url = f"{repo_api_url(transport, repo)}/pulls/{pr_number}/commits"
    return fetch_all_pages(
        transport,
        lambda page: f"{base_url}?{_page_query(page)}",
        _decode_commit_shas,
        page_delay_seconds=transport.pacing.pull_commits_page_seconds,
    )


def resolve_implicated_pull_requests(
    *,
    transport: HttpTransport,
    repo: RepositoryRef,
    commit_id: str,
) -> set[int]:
    """Return open pull requests whose head or history contains the commit.

    Pull requests whose head matches are implicated without further
    requests; every other open pull request has its commit list checked.
    """
    commit_id = validate_commit_id(commit_id)
    implicated: set[int] = set()
    maybe_implicated: list[int] = []

    for pull in fetch_open_pull_requests(transport=transport, repo=repo):
        if pull.head_sha == commit_id:
            implicated.add(pull.number)
        else:
            maybe_implicated.append(pull.number)

    for pr_number in maybe_implicated:
        commits = fetch_pull_request_commits(transport=transport, repo=repo, pr_number=pr_number)
        if commit_id in commits:
            implicated.add(pr_number)

    logger.info(
        "Resolved implicated pull requests: repo=%s commit=%s prs=%s",
        repo.full_name,
        commit_id,
        sorted(implicated),
    )
    return implicated


def parse_repo_full_name(repo_full_name: str) -> RepositoryRef:
    """Parse and validate repository input in owner/repo format."""
    owner, separator, repo = repo_full_name.strip().partition("/")
    if not separator or not owner or not repo or "/" in repo:
        raise GitHubInputError(
            f"Invalid repo '{repo_full_name}'. Expected format is owner/repo."
        )
    return RepositoryRef(owner=owner, name=repo)


def validate_pr_number(pr_number: int) -> int:
    """Validate and normalize pull request number input."""
    if pr_number <= 0:
        raise GitHubInputError(f"Invalid PR number '{pr_number}'. Expected a positive integer.")
    return pr_number


def validate_commit_id(commit_id: str) -> str:
    """Validate a full 40-character commit id."""
    if not COMMIT_ID_PATTERN.fullmatch(commit_id):
        raise GitHubInputError(
            f"Invalid commit id '{commit_id}'. Expected a 40-character hex commit id."
        )
    return commit_id


def get_github_token() -> str:
    """Read GitHub token from environment and fail fast if missing."""
    token, _source = get_github_token_with_source()
    return token


def get_github_token_with_source() -> tuple[str, str]:
    """Read GitHub token and return token value with environment source key."""
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    github_token = os.getenv("GITHUB_TOKEN")
    if github_token:
        return github_token, "GITHUB_TOKEN"

    gh_token = os.getenv("GH_TOKEN")
    if gh_token:
        return gh_token, "GH_TOKEN"

    message = "Missing GitHub token. Set GITHUB_TOKEN (preferred) or GH_TOKEN."
    raise GitHubAuthError(message)


def build_http_transport(
    timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    *,
    trust_env: bool = True,
    pacing: PacingPolicy | None = None,
    sleeper: Sleeper | None = None,
) -> HttpTransport:
    """Build an authenticated GitHub transport."""
    token = get_github_token()
    client = build_http_client(
        token,
        connect_timeout_seconds=timeout_seconds,
        trust_env=trust_env,
    )
    return HttpTransport(
        client,
        api_base_url=os.getenv(GITHUB_API_URL_ENV_VAR) or GITHUB_API_BASE_URL,
        raw_base_url=os.getenv(GITHUB_RAW_URL_ENV_VAR) or GITHUB_RAW_BASE_URL,
        sleeper=sleeper,
        pacing=pacing,
    )
