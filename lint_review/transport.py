"""HTTP transport with header capture, retries and abuse-rate pacing."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from types import TracebackType
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "automattic-github-review-client"
DEFAULT_CONNECT_TIMEOUT_SECONDS = 20.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 60.0
DEFAULT_POST_REQUEST_SECONDS = 1.0
DEFAULT_POST_SUBMIT_SECONDS = 5.0
DEFAULT_COMMENTS_PAGE_SECONDS = 3.0
DEFAULT_PULLS_PAGE_SECONDS = 2.0
DEFAULT_PULL_COMMITS_PAGE_SECONDS = 2.0
STATUS_HEADER_KEY = "status"

HeaderCallback = Callable[[str], int]


class GitHubRetriesExhaustedError(RuntimeError):
    """Raised when every transport attempt failed and the run cannot continue."""

    def __init__(self, message: str, *, url: str, attempts: int) -> None:
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class Sleeper(Protocol):
    """Delay strategy used for every pacing and backoff wait."""

    def wait(self, seconds: float) -> None:
        """Block for the given number of seconds."""


class TimeSleeper:
    """Wall-clock sleeper."""

    def wait(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


@dataclass(frozen=True, slots=True)
class PacingPolicy:
    """Delays mandated by GitHub's abuse-rate guidance."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    post_request_seconds: float = DEFAULT_POST_REQUEST_SECONDS
    post_submit_seconds: float = DEFAULT_POST_SUBMIT_SECONDS
    comments_page_seconds: float = DEFAULT_COMMENTS_PAGE_SECONDS
    pulls_page_seconds: float = DEFAULT_PULLS_PAGE_SECONDS
    pull_commits_page_seconds: float = DEFAULT_PULL_COMMITS_PAGE_SECONDS

    @classmethod
    def immediate(cls, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> PacingPolicy:
        """Return a policy with every delay set to zero."""
        return cls(
            max_attempts=max_attempts,
            retry_backoff_seconds=0.0,
            post_request_seconds=0.0,
            post_submit_seconds=0.0,
            comments_page_seconds=0.0,
            pulls_page_seconds=0.0,
            pull_commits_page_seconds=0.0,
        )


class HeaderCollector:
    """Accumulate raw response header lines for exactly one in-flight request.

    Each line is split on its first ``:``; the lowercased, trimmed name maps to
    the list of trimmed values seen so far, so repeated headers are kept in
    order. Lines without a separator are ignored but still reported as
    consumed. ``drain`` hands the map over and resets the collector.
    """

    def __init__(self) -> None:
        self._headers: dict[str, list[str]] = {}

    def __call__(self, line: str) -> int:
        consumed = len(line)
        name, separator, value = line.partition(":")
        if not separator:
            return consumed
        key = name.strip().lower()
        self._headers.setdefault(key, []).append(value.strip())
        return consumed

    def drain(self) -> dict[str, list[str]]:
        """Return collected headers and reset to empty."""
        headers = self._headers
        self._headers = {}
        status_values = headers.get(STATUS_HEADER_KEY)
        if status_values:
            headers[STATUS_HEADER_KEY] = status_values[0].split(" ", 1)
        return headers


@dataclass(frozen=True, slots=True)
class RawResponse:
    """Body, multi-valued headers and status of one HTTP exchange."""

    body: bytes
    headers: dict[str, list[str]] = field(default_factory=dict)
    status: tuple[str, str] = ("", "")

    @property
    def status_code(self) -> int:
        """Return the numeric status code, or 0 when none was captured."""
        try:
            return int(self.status[0])
        except ValueError:
            return 0

    def header(self, name: str) -> str | None:
        """Return the first value of a header, if present."""
        values = self.headers.get(name.lower())
        if not values:
            return None
        return values[0]


def _status_from_headers(headers: dict[str, list[str]]) -> tuple[str, str]:
    """Build the (code, reason) pair from a drained status entry."""
    parts = headers.get(STATUS_HEADER_KEY) or []
    code = parts[0] if parts else ""
    reason = parts[1] if len(parts) > 1 else ""
    return code, reason


def _replay_header_lines(response: httpx.Response, callbacks: list[HeaderCallback]) -> None:
    """Feed a status line and every raw header line to the callbacks."""
    lines = [f"Status: {response.status_code} {response.reason_phrase}\r\n"]
    for raw_name, raw_value in response.headers.raw:
        name = raw_name.decode("latin-1")
        value = raw_value.decode("latin-1")
        lines.append(f"{name}: {value}\r\n")
    for line in lines:
        for callback in callbacks:
            callback(line)


class HttpTransport:
    """Send GitHub requests with retries, header capture and pacing."""

    def __init__(
        self,
        client: httpx.Client,
        *,
        api_base_url: str = "https://api.github.com",
        raw_base_url: str = "https://raw.githubusercontent.com",
        sleeper: Sleeper | None = None,
        pacing: PacingPolicy | None = None,
    ) -> None:
        self._client = client
        self.api_base_url = api_base_url.rstrip("/")
        self.raw_base_url = raw_base_url.rstrip("/")
        self.sleeper: Sleeper = sleeper if sleeper is not None else TimeSleeper()
        self.pacing = pacing if pacing is not None else PacingPolicy()

    def __enter__(self) -> HttpTransport:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def pause(self, seconds: float) -> None:
        """Wait through the configured sleeper."""
        self.sleeper.wait(seconds)

    def send(
        self,
        url: str,
        method: str = "GET",
        body: bytes | None = None,
        header_callback: HeaderCallback | None = None,
    ) -> RawResponse:
        """Send one request, retrying transport-level failures.

        Any HTTP status is returned to the caller; only request errors raised
        by httpx are retried. Successful GETs are followed
        by the minimum inter-request delay. POST callers apply their own
        rate-limit handling instead.
        """
        method = method.upper()
        max_attempts = max(1, self.pacing.max_attempts)
        for attempt_number in range(1, max_attempts + 1):
            collector = HeaderCollector()
            callbacks: list[HeaderCallback] = [collector]
            if header_callback is not None:
                callbacks.append(header_callback)

            try:
                response = self._client.request(
                    method,
                    url,
                    content=body,
                    headers={"Content-Type": "application/json"} if body is not None else None,
                )
            except httpx.RequestError as error:
                failure = f"{type(error).__name__}: {error}"
            else:
                _replay_header_lines(response, callbacks)
                headers = collector.drain()
                if method == "GET":
                    self.pause(self.pacing.post_request_seconds)
                return RawResponse(
                    body=response.content,
                    headers=headers,
                    status=_status_from_headers(headers),
                )

            logger.warning(
                "Sending request to GitHub failed, will retry in a bit: "
                "url=%s method=%s attempt=%d error=%s",
                url,
                method,
                attempt_number,
                failure,
            )
            if attempt_number < max_attempts:
                self.pause(self.pacing.retry_backoff_seconds)

        logger.error("Gave up, cannot continue: url=%s attempts=%d", url, max_attempts)
        raise GitHubRetriesExhaustedError(
            f"GitHub request to '{url}' failed after {max_attempts} attempts.",
            url=url,
            attempts=max_attempts,
        )


def build_http_client(
    token: str,
    *,
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    trust_env: bool = True,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Build an httpx client carrying the auth header and fixed user agent."""
    headers = {
        "Authorization": f"token {token}",
        "User-Agent": USER_AGENT,
    }
    return httpx.Client(
        headers=headers,
        timeout=httpx.Timeout(None, connect=connect_timeout_seconds),
        trust_env=trust_env,
        transport=transport,
    )
