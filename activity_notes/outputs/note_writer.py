"""Daily note writer.

Renders an AnalysisResult as a markdown block and appends it to the day's
note, creating the note when it does not exist yet. Existing content is never
rewritten: a new block goes after it, separated by a blank line and a
horizontal rule.
"""

from __future__ import annotations

import re

import structlog

from activity_notes.errors import WriteError
from activity_notes.models import AnalysisResult
from activity_notes.outputs.document_store import DocumentStore

logger = structlog.get_logger()

BLOCK_SEPARATOR = "\n---\n"
EMPTY_INSIGHTS = "_No insights were produced._"


def render(result: AnalysisResult) -> str:
    """Render a result as a markdown block ending in a single newline."""
    lines = [f"## Activity analysis {result.timestamp.strftime('%Y-%m-%d %H:%M')}", ""]

    if result.activity_ids:
        lines.extend([f"Activities: {', '.join(result.activity_ids)}", ""])

    if result.partial:
        lines.extend(
            [
                "> [!warning] Partial analysis",
                "> The analysis ended early; the results below are incomplete.",
                "",
            ]
        )

    body = result.insights_text
    if result.metrics_table:
        # The table gets its own section below.
        body = body.replace(result.metrics_table, "", 1)
    body = re.sub(r"\n{3,}", "\n\n", body).strip()
    lines.extend([body or EMPTY_INSIGHTS, ""])

    if result.metrics_table:
        lines.extend(["### Metrics", "", result.metrics_table, ""])

    if result.charts:
        lines.extend(["### Charts", ""])
        lines.extend(f"![{chart.title}]({chart.url})" for chart in result.charts)
        lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


def compose(existing: str, block: str) -> str:
    """Append ``block`` after ``existing`` without touching its bytes.

    Only the newlines needed to leave one blank line before the rule are
    added; a note that already ends in a blank line gets none.
    """
    if not existing:
        return block
    if existing.endswith("\n\n"):
        return existing + BLOCK_SEPARATOR.lstrip("\n") + block
    if not existing.endswith("\n"):
        existing += "\n"
    return existing + BLOCK_SEPARATOR + block


class NoteWriter:
    """Create-or-append writer for daily notes.

    Not safe to call concurrently for the same path; the scheduler
    serializes cycles.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def write(self, result: AnalysisResult, target_path: str) -> None:
        block = render(result)
        try:
            if await self.store.exists(target_path):
                existing = await self.store.read(target_path)
                await self.store.modify(target_path, compose(existing, block))
                action = "appended"
            else:
                await self.store.create(target_path, block)
                action = "created"
        except (OSError, ValueError) as e:
            logger.error("Note write failed", path=target_path, error=str(e))
            raise WriteError(f"Cannot write {target_path}: {e}") from e

        logger.info(
            "Note written",
            path=target_path,
            action=action,
            charts=len(result.charts),
            partial=result.partial,
        )
