"""Unit tests for the local Git checkout file source."""

from __future__ import annotations

from pathlib import Path

import pytest
from lint_review.local_repo import LocalGitRepository

COMMIT = "d" * 40


def make_checkout(tmp_path: Path, head: str) -> Path:
    """Create a minimal working tree with a .git/HEAD file."""
    git_dir = tmp_path / ".git"
    git_dir.mkdir()
    (git_dir / "HEAD").write_text(head, encoding="utf-8")
    return tmp_path


@pytest.mark.unit
def test_head_commit_reads_detached_head(tmp_path: Path) -> None:
    repo = LocalGitRepository(make_checkout(tmp_path, f"{COMMIT}\n"))

    assert repo.head_commit() == COMMIT


@pytest.mark.unit
def test_head_commit_follows_symbolic_ref(tmp_path: Path) -> None:
    checkout = make_checkout(tmp_path, "ref: refs/heads/main\n")
    ref_path = checkout / ".git" / "refs" / "heads"
    ref_path.mkdir(parents=True)
    (ref_path / "main").write_text(f"{COMMIT}\n", encoding="utf-8")

    assert LocalGitRepository(checkout).head_commit() == COMMIT


@pytest.mark.unit
def test_head_commit_falls_back_to_packed_refs(tmp_path: Path) -> None:
    checkout = make_checkout(tmp_path, "ref: refs/heads/main\n")
    (checkout / ".git" / "packed-refs").write_text(
        "# pack-refs with: peeled fully-peeled sorted\n"
        f"{'e' * 40} refs/heads/other\n"
        f"{COMMIT} refs/heads/main\n",
        encoding="utf-8",
    )

    assert LocalGitRepository(checkout).head_commit() == COMMIT


@pytest.mark.unit
def test_head_commit_is_none_without_git_dir(tmp_path: Path) -> None:
    assert LocalGitRepository(tmp_path).head_commit() is None


@pytest.mark.unit
def test_read_file_returns_bytes_or_none(tmp_path: Path) -> None:
    checkout = make_checkout(tmp_path, f"{COMMIT}\n")
    (checkout / "src").mkdir()
    (checkout / "src" / "a.php").write_bytes(b"<?php\n")
    repo = LocalGitRepository(checkout)

    assert repo.read_file("src/a.php") == b"<?php\n"
    assert repo.read_file("src/missing.php") is None


@pytest.mark.unit
def test_read_file_refuses_paths_outside_checkout(tmp_path: Path) -> None:
    checkout = tmp_path / "checkout"
    checkout.mkdir()
    (tmp_path / "secret.txt").write_text("nope", encoding="utf-8")

    assert LocalGitRepository(checkout).read_file("../secret.txt") is None
