"""Local Git checkout used as a read-through source for committed files."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol


class LocalFileSource(Protocol):
    """Local copy of a repository that can serve files at its head commit."""

    def head_commit(self) -> str | None:
        """Return the checked-out commit id, or None when unknown."""

    def read_file(self, file_name: str) -> bytes | None:
        """Return file contents, or None when the file cannot be read."""


class LocalGitRepository:
    """Working tree of a Git clone on disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"LocalGitRepository({str(self.path)!r})"

    def _read_git_text(self, relative_path: str) -> str | None:
        try:
            return (self.path / ".git" / relative_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def _resolve_packed_ref(self, ref: str) -> str | None:
        packed_refs = self._read_git_text("packed-refs")
        if packed_refs is None:
            return None
        for line in packed_refs.splitlines():
            if not line or line.startswith(("#", "^")):
                continue
            sha, _separator, name = line.partition(" ")
            if name.strip() == ref:
                return sha.strip()
        return None

    def head_commit(self) -> str | None:
        """Read ``.git/HEAD``, following a symbolic ref when present."""
        head = self._read_git_text("HEAD")
        if head is None:
            return None
        head = head.strip()
        if not head.startswith("ref: "):
            return head or None

        ref = head[len("ref: "):].strip()
        ref_value = self._read_git_text(ref)
        if ref_value is not None:
            return ref_value.strip() or None
        return self._resolve_packed_ref(ref)

    def read_file(self, file_name: str) -> bytes | None:
        """Read a file from the working tree, refusing paths outside it."""
        root = self.path.resolve()
        target = (root / file_name.lstrip("/")).resolve()
        if not target.is_relative_to(root):
            return None
        try:
            return target.read_bytes()
        except OSError:
            return None
