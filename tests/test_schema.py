"""Schema contract tests for findings and review payloads."""

from __future__ import annotations

import pytest
from lint_review.schema import (
    Finding,
    ReviewCommentPayload,
    ReviewEvent,
    ReviewPayload,
)
from pydantic import ValidationError


def make_valid_finding_payload() -> dict[str, object]:
    """Create a valid finding payload for schema tests."""
    return {
        "file_name": "src/example.php",
        "file_line": 10,
        "level": "warning",
        "message": "Line exceeds 120 characters.",
    }


@pytest.mark.unit
def test_finding_json_roundtrip() -> None:
    original = Finding.model_validate(make_valid_finding_payload())
    restored = Finding.model_validate_json(original.model_dump_json())
    assert restored == original


@pytest.mark.unit
def test_finding_normalizes_level_and_leading_slash() -> None:
    finding = Finding.model_validate(
        {**make_valid_finding_payload(), "file_name": "/src/example.php", "level": " ERROR "}
    )
    assert finding.file_name == "src/example.php"
    assert finding.level == "error"


@pytest.mark.unit
def test_finding_rejects_zero_line() -> None:
    with pytest.raises(ValidationError):
        Finding.model_validate({**make_valid_finding_payload(), "file_line": 0})


@pytest.mark.unit
def test_finding_rejects_root_only_file_name() -> None:
    with pytest.raises(ValidationError):
        Finding.model_validate({**make_valid_finding_payload(), "file_name": "/"})


@pytest.mark.unit
def test_finding_rejects_unknown_field() -> None:
    with pytest.raises(ValidationError):
        Finding.model_validate({**make_valid_finding_payload(), "unexpected": "value"})


@pytest.mark.unit
def test_finding_is_immutable() -> None:
    finding = Finding.model_validate(make_valid_finding_payload())
    with pytest.raises(ValidationError):
        finding.file_line = 11  # type: ignore[misc]


@pytest.mark.unit
def test_review_payload_dumps_wire_shape() -> None:
    payload = ReviewPayload(
        commit_id="A" * 40,
        body="PHPCS scanning turned up:\n1 error(s)",
        event=ReviewEvent.REQUEST_CHANGES,
        comments=[ReviewCommentPayload(body="**Error**: Bad", position=3, path="a.php")],
    )

    assert payload.model_dump(mode="json") == {
        "commit_id": "A" * 40,
        "body": "PHPCS scanning turned up:\n1 error(s)",
        "event": "REQUEST_CHANGES",
        "comments": [{"body": "**Error**: Bad", "position": 3, "path": "a.php"}],
    }


@pytest.mark.unit
def test_review_payload_rejects_short_commit_id() -> None:
    with pytest.raises(ValidationError):
        ReviewPayload(commit_id="abc123", body="", event=ReviewEvent.COMMENT)


@pytest.mark.unit
def test_review_payload_rejects_unknown_event() -> None:
    with pytest.raises(ValidationError):
        ReviewPayload.model_validate({"commit_id": "a" * 40, "body": "", "event": "APPROVE"})
