from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from compound_loop.config import SPECS_DIRNAME
from compound_loop.loop import IterationSummary, LoopStatus
from compound_loop.state import SpecDocument, StateError
from compound_loop.state.spec_document import SPEC_FILENAME

logger = logging.getLogger(__name__)

STATUS_COLUMNS = ("name", "status", "pending", "completed", "iterations", "directory")


@dataclass(slots=True, frozen=True)
class SpecSummary:
    name: str
    status: str
    directory: str
    pending: int
    completed: int
    iterations: int

    @classmethod
    def from_document(cls, document: SpecDocument, project_root: Path) -> SpecSummary:
        counts = document.counts()
        try:
            directory = str(document.directory.relative_to(project_root))
        except ValueError:
            directory = str(document.directory)
        return cls(
            name=document.name,
            status=document.status.value,
            directory=directory,
            pending=counts.pending,
            completed=counts.completed,
            iterations=document.iteration_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "directory": self.directory,
            "pending": self.pending,
            "completed": self.completed,
            "iterations": self.iterations,
        }


def status_summary(project_root: Path) -> list[SpecSummary]:
    """Summarize every ``specs/*/SPEC.md`` under ``project_root`` without modifying them."""
    specs_dir = project_root / SPECS_DIRNAME
    if not specs_dir.is_dir():
        return []
    summaries: list[SpecSummary] = []
    for spec_path in sorted(specs_dir.glob(f"*/{SPEC_FILENAME}")):
        try:
            document = SpecDocument.load(spec_path)
        except StateError as exc:
            logger.warning("Skipping unreadable spec %s: %s", spec_path, exc)
            continue
        summaries.append(SpecSummary.from_document(document, project_root))
    return summaries


def render_status_table(summaries: list[SpecSummary]) -> str:
    if not summaries:
        return "No specs found. Create one with: cr spec <name>"
    rows = [list(STATUS_COLUMNS)]
    for summary in summaries:
        payload = summary.to_dict()
        rows.append([str(payload[column]) for column in STATUS_COLUMNS])
    widths = [max(len(row[index]) for row in rows) for index in range(len(STATUS_COLUMNS))]
    lines = [
        "  ".join(cell.ljust(width) for cell, width in zip(row, widths, strict=True)).rstrip()
        for row in rows
    ]
    lines.insert(1, "  ".join("-" * width for width in widths))
    return "\n".join(lines)


def render_iteration_summary(summary: IterationSummary) -> str:
    headline = {
        LoopStatus.COMPLETE: f"Spec '{summary.spec}' complete.",
        LoopStatus.MAX_ITERATIONS: f"Spec '{summary.spec}' stopped at the iteration limit.",
        LoopStatus.BLOCKED: f"Spec '{summary.spec}' is blocked and needs attention.",
    }[summary.status]
    return "\n".join(
        [
            headline,
            f"Status: {summary.status.value}",
            f"Iterations: {summary.iterations}",
            f"Learnings captured: {summary.learnings}",
        ]
    )
