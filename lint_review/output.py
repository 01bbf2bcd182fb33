"""Review comment and summary rendering."""

from __future__ import annotations

from collections.abc import Mapping

from lint_review.schema import Finding

DEFAULT_SCANNER_NAME = "PHPCS"


def format_comment_body(finding: Finding) -> str:
    """Render one finding as ``**Level**: message``."""
    return f"**{finding.level.capitalize()}**: {finding.message}"


def render_review_body(
    stats: Mapping[str, int], *, scanner_name: str = DEFAULT_SCANNER_NAME
) -> str:
    """Render the review summary with one ``<count> <level>(s)`` line per level."""
    lines = [f"{scanner_name} scanning turned up:"]
    for level, count in stats.items():
        lines.append(f"{count} {level}(s)")
    return "\n".join(lines)
