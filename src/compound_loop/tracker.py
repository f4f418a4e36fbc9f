"""Checklist parsing for spec documents.

Tasks are ``- [ ]`` / ``- [x]`` lines. A line indented deeper than the task
above it is a sub-task of that task; deeper nesting is folded into the same
parent. A parent with sub-tasks is counted only through its sub-tasks.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

CHECKBOX_PATTERN = re.compile(r"^(?P<indent>[ \t]*)[-*+]\s+\[(?P<mark>[ xX])\]\s?(?P<label>.*)$")
CONTINUATION_PATTERN = re.compile(r"<!--\s*CONTINUATION:\s*(.*?)\s*-->", re.DOTALL)
LEVEL2_HEADING_PATTERN = re.compile(r"^##(?!#)\s*(?P<title>.*?)\s*$")
STATE_HEADING_PATTERN = re.compile(
    r"^###(?!#)\s*(?P<title>in progress|pending|completed|blocked)\b", re.IGNORECASE
)
FENCE_PATTERN = re.compile(r"^\s*(```|~~~)")
TAB_WIDTH = 4


class TaskState(StrEnum):
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    COMPLETED = "completed"
    BLOCKED = "blocked"

    @property
    def heading(self) -> str:
        return {
            TaskState.IN_PROGRESS: "In Progress",
            TaskState.PENDING: "Pending",
            TaskState.COMPLETED: "Completed",
            TaskState.BLOCKED: "Blocked",
        }[self]

    @classmethod
    def from_heading(cls, title: str) -> TaskState:
        return cls(title.strip().lower().replace(" ", "_"))


@dataclass(slots=True)
class Task:
    label: str
    done: bool = False
    children: list[Task] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    section: TaskState | None = None
    index: int = 0

    @property
    def ref(self) -> str:
        return f"task-{self.index}"

    def leaves(self) -> list[Task]:
        return list(self.children) if self.children else [self]

    @property
    def complete(self) -> bool:
        return all(leaf.done for leaf in self.leaves())

    @property
    def state(self) -> TaskState:
        if self.section is not None:
            return self.section
        return TaskState.COMPLETED if self.complete else TaskState.PENDING

    def mark_done(self) -> None:
        self.done = True
        for child in self.children:
            child.done = True

    def render(self, indent: str = "  ") -> list[str]:
        lines = [f"- [{'x' if self.done else ' '}] {self.label}".rstrip()]
        for note in self.notes:
            lines.append(f"{indent}{note}")
        for child in self.children:
            lines.append(f"{indent}- [{'x' if child.done else ' '}] {child.label}".rstrip())
        return lines


@dataclass(slots=True, frozen=True)
class TaskCounts:
    pending: int = 0
    completed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.completed

    @property
    def all_complete(self) -> bool:
        return self.pending == 0

    def __add__(self, other: TaskCounts) -> TaskCounts:
        return TaskCounts(self.pending + other.pending, self.completed + other.completed)


def _indent_width(indent: str) -> int:
    return len(indent.expandtabs(TAB_WIDTH))


def section_bounds(lines: list[str], title: str = "Tasks") -> tuple[int, int] | None:
    """Return ``(start, end)`` line indexes of a level-2 section body, if present."""
    start: int | None = None
    in_fence = False
    for index, line in enumerate(lines):
        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = LEVEL2_HEADING_PATTERN.match(line)
        if not match:
            continue
        if start is not None:
            return start, index
        if match.group("title").lower() == title.lower():
            start = index + 1
    if start is None:
        return None
    return start, len(lines)


def parse_task_lines(lines: Iterable[str]) -> list[Task]:
    tasks: list[Task] = []
    parent: Task | None = None
    parent_indent = 0
    section: TaskState | None = None
    in_fence = False

    for raw_line in lines:
        line = raw_line.rstrip("\n")
        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if in_fence or not line.strip():
            continue

        heading = STATE_HEADING_PATTERN.match(line)
        if heading:
            section = TaskState.from_heading(heading.group("title"))
            parent = None
            continue

        match = CHECKBOX_PATTERN.match(line)
        if match:
            width = _indent_width(match.group("indent"))
            done = match.group("mark") in {"x", "X"}
            label = match.group("label").strip()
            if parent is not None and width > parent_indent:
                parent.children.append(Task(label=label, done=done, section=section))
                continue
            parent = Task(label=label, done=done, section=section, index=len(tasks) + 1)
            parent_indent = width
            tasks.append(parent)
            continue

        leading = _indent_width(line[: len(line) - len(line.lstrip())])
        if parent is not None and leading > parent_indent:
            parent.notes.append(line.strip())
        else:
            parent = None
    return tasks


def parse_tasks(text: str) -> list[Task]:
    """Parse the task tree from the ``## Tasks`` section, or the whole text without one."""
    lines = text.splitlines()
    bounds = section_bounds(lines)
    if bounds is not None:
        lines = lines[bounds[0] : bounds[1]]
    return parse_task_lines(lines)


def fold_counts(tasks: Iterable[Task]) -> TaskCounts:
    counts = TaskCounts()
    for task in tasks:
        for leaf in task.leaves():
            counts += TaskCounts(completed=1) if leaf.done else TaskCounts(pending=1)
    return counts


def count_tasks(text: str) -> TaskCounts:
    return fold_counts(parse_tasks(text))


def all_tasks_complete(text: str) -> bool:
    """True when every countable task is checked. Vacuously true for zero tasks."""
    return count_tasks(text).all_complete


def get_continuation_marker(text: str) -> str:
    """Return the live continuation note, or an empty string when there is none."""
    matches = CONTINUATION_PATTERN.findall(text)
    if not matches:
        return ""
    return matches[-1].strip()


def select_task(tasks: list[Task]) -> Task | None:
    """Pick the task to work on next: In Progress first, then Pending in document order."""
    for task in tasks:
        if task.state == TaskState.IN_PROGRESS:
            return task
    for task in tasks:
        if task.state == TaskState.PENDING:
            return task
    # A task filed under Completed that still has unchecked boxes is still work.
    for task in tasks:
        if task.state == TaskState.COMPLETED and not task.complete:
            return task
    return None
