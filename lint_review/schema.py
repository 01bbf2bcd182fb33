"""Schema contract for findings and review submissions."""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

COMMIT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{40}$")


class ReviewEvent(StrEnum):
    """Review dispositions this bot submits."""

    COMMENT = "COMMENT"
    REQUEST_CHANGES = "REQUEST_CHANGES"


class SubmissionStatus(StrEnum):
    """Outcome of one review submission."""

    DRY_RUN = "dry_run"
    SUBMITTED = "submitted"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


class Finding(BaseModel):
    """Static-analysis issue that may become a review comment."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    file_name: str = Field(min_length=1)
    file_line: int = Field(ge=1)
    level: str = Field(min_length=1)
    message: str = Field(min_length=1)

    @field_validator("level")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        """Store severity levels in lower case."""
        return value.strip().lower()

    @field_validator("file_name")
    @classmethod
    def strip_leading_slash(cls, value: str) -> str:
        """Keep file names relative to the repository root."""
        normalized = value.lstrip("/")
        if not normalized:
            raise ValueError("file_name must name a file inside the repository.")
        return normalized


class ReviewCommentPayload(BaseModel):
    """One line comment inside a review submission."""

    model_config = ConfigDict(extra="forbid")

    body: str
    position: int = Field(ge=1)
    path: str = Field(min_length=1)


class ReviewPayload(BaseModel):
    """JSON body posted to the pull request reviews endpoint."""

    model_config = ConfigDict(extra="forbid")

    commit_id: str
    body: str
    event: ReviewEvent
    comments: list[ReviewCommentPayload] = Field(default_factory=list)

    @field_validator("commit_id")
    @classmethod
    def validate_commit_id(cls, value: str) -> str:
        """Require a full 40-character commit id."""
        if not COMMIT_ID_PATTERN.fullmatch(value):
            raise ValueError("commit_id must be a 40-character hex commit id.")
        return value
