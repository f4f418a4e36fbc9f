from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

from compound_loop.state.storage import StateError, atomic_write_text, utcnow_iso
from compound_loop.tracker import (
    CHECKBOX_PATTERN,
    CONTINUATION_PATTERN,
    STATE_HEADING_PATTERN,
    Task,
    TaskCounts,
    TaskState,
    fold_counts,
    get_continuation_marker,
    parse_task_lines,
    parse_tasks,
    section_bounds,
)

logger = logging.getLogger(__name__)

SPEC_FILENAME = "SPEC.md"
FRONT_MATTER_DELIMITER = "---"
BLOCKED_NOTE_PREFIX = "> Blocked:"
MAX_REASON_CHARS = 500
MAX_ERROR_CHARS = 2000


class SpecStatus(StrEnum):
    PENDING = "pending"
    BUILDING = "building"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class IterationOutcome(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class IterationRecord:
    number: int
    task: str
    outcome: IterationOutcome
    files: tuple[str, ...] = ()
    tests: str = ""
    learning: str = ""
    error: str = ""
    at: str = field(default_factory=utcnow_iso)

    def render(self) -> str:
        lines = [
            f"### Iteration {self.number} ({self.at})",
            f"- Task: {self.task}",
            f"- Outcome: {self.outcome.value}",
            f"- Files: {', '.join(self.files) if self.files else 'none'}",
            f"- Tests: {self.tests or 'not run'}",
        ]
        if self.learning:
            lines.append(f"- Learning: {_one_line(self.learning)}")
        if self.error:
            lines.append("- Error:")
            lines.append("")
            error_text = _sanitize(self.error[-MAX_ERROR_CHARS:])
            lines.extend(f"    {line}" for line in error_text.splitlines())
        return "\n".join(lines)


def _sanitize(text: str) -> str:
    # Keep captured output from opening fences or markers inside the document.
    return text.replace("```", "'''").replace("~~~", "---").replace("<!--", "<!- -")


def _one_line(text: str, limit: int = MAX_REASON_CHARS) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) > limit:
        return collapsed[: limit - 3] + "..."
    return collapsed


def split_front_matter(text: str) -> tuple[dict[str, Any], str]:
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != FRONT_MATTER_DELIMITER:
        return {}, text
    for index in range(1, len(lines)):
        if lines[index].strip() == FRONT_MATTER_DELIMITER:
            raw = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            try:
                data = yaml.safe_load(raw) if raw.strip() else {}
            except yaml.YAMLError as exc:
                raise StateError(f"Spec front matter is not valid YAML: {exc}") from exc
            if not isinstance(data, dict):
                raise StateError("Spec front matter must be a mapping.")
            return data, body
    return {}, text


def dump_front_matter(data: dict[str, Any]) -> str:
    rendered = yaml.safe_dump(data, sort_keys=False, default_flow_style=False, allow_unicode=True)
    return f"{FRONT_MATTER_DELIMITER}\n{rendered}{FRONT_MATTER_DELIMITER}\n"


class SpecDocument:
    """A feature spec on disk: YAML front matter plus a markdown body.

    The loop controller is the only writer between agent invocations. Each
    mutation edits the in-memory body; ``save`` replaces the file atomically.
    """

    def __init__(self, path: Path, front_matter: dict[str, Any], body: str) -> None:
        self.path = path
        self.front_matter = dict(front_matter)
        self.body = body

    @staticmethod
    def resolve_path(location: Path) -> Path:
        if location.is_dir() or location.suffix.lower() != ".md":
            return location / SPEC_FILENAME
        return location

    @classmethod
    def load(cls, location: Path) -> SpecDocument:
        path = cls.resolve_path(location)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise StateError(f"Spec document not found: {path}") from exc
        except OSError as exc:
            raise StateError(f"Failed to read spec document {path}: {exc}") from exc
        return cls.parse(text, path)

    @classmethod
    def parse(cls, text: str, path: Path) -> SpecDocument:
        front_matter, body = split_front_matter(text)
        return cls(path, front_matter, body)

    @classmethod
    def create(cls, directory: Path, name: str) -> SpecDocument:
        now = utcnow_iso()
        front_matter = {
            "name": name,
            "status": SpecStatus.PENDING.value,
            "iteration": 0,
            "created": now,
            "updated": now,
        }
        body = "\n".join(
            [
                "",
                f"# {name}",
                "",
                "## Tasks",
                "",
                "### Pending",
                "- [ ] Describe the first task",
                "",
                "## Notes",
                "",
                "## Iteration Log",
                "",
            ]
        )
        return cls(directory / SPEC_FILENAME, front_matter, body)

    @property
    def directory(self) -> Path:
        return self.path.parent

    @property
    def name(self) -> str:
        value = self.front_matter.get("name")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return self.directory.name

    @property
    def status(self) -> SpecStatus:
        raw = str(self.front_matter.get("status") or SpecStatus.PENDING.value).strip().lower()
        try:
            return SpecStatus(raw)
        except ValueError:
            logger.warning("Unknown spec status %r in %s; treating as pending", raw, self.path)
            return SpecStatus.PENDING

    @status.setter
    def status(self, value: SpecStatus) -> None:
        self.front_matter["status"] = SpecStatus(value).value

    @property
    def iteration_count(self) -> int:
        try:
            return max(0, int(self.front_matter.get("iteration") or 0))
        except (TypeError, ValueError):
            return 0

    def increment_iteration(self) -> int:
        count = self.iteration_count + 1
        self.front_matter["iteration"] = count
        return count

    def text(self) -> str:
        if not self.front_matter:
            return self.body
        return dump_front_matter(self.front_matter) + self.body

    def has_task_section(self) -> bool:
        return section_bounds(self.body.splitlines()) is not None

    def tasks(self) -> list[Task]:
        return parse_tasks(self.body)

    def counts(self) -> TaskCounts:
        return fold_counts(self.tasks())

    def all_tasks_complete(self) -> bool:
        return self.counts().all_complete

    def find_task(self, label: str, index: int | None = None) -> Task | None:
        tasks = self.tasks()
        for task in tasks:
            if task.label == label:
                return task
        if index is not None and 0 < index <= len(tasks):
            return tasks[index - 1]
        return None

    def continuation(self) -> str:
        return get_continuation_marker(self.body)

    def set_continuation(self, text: str | None) -> None:
        """Replace every continuation marker with at most one, placed in ``## Notes``."""
        body = CONTINUATION_PATTERN.sub("", self.body)
        body = re.sub(r"\n{3,}", "\n\n", body)
        self.body = body
        if text and text.strip():
            marker = f"<!-- CONTINUATION: {_one_line(text, limit=2000)} -->"
            self._append_to_section("Notes", marker)

    def move_task(self, task: Task, state: TaskState, *, reason: str | None = None) -> Task:
        """File ``task`` under ``state`` and re-render the tasks section."""
        lines = self.body.splitlines()
        bounds = section_bounds(lines)
        if bounds is None:
            raise StateError(f"Spec document {self.path} has no '## Tasks' section.")
        start, end = bounds
        section_lines = lines[start:end]
        preamble = self._task_preamble(section_lines)
        tasks = parse_task_lines(section_lines)

        target: Task | None = None
        for candidate in tasks:
            if candidate.index == task.index and candidate.label == task.label:
                target = candidate
                break
        if target is None:
            target = next((item for item in tasks if item.label == task.label), None)
        if target is None:
            raise StateError(f"Task not found in {self.path}: {task.label}")

        target.notes = [note for note in target.notes if not note.startswith(BLOCKED_NOTE_PREFIX)]
        if state == TaskState.COMPLETED:
            target.mark_done()
        if state == TaskState.BLOCKED and reason:
            target.notes.append(f"{BLOCKED_NOTE_PREFIX} {_one_line(reason)}")
        tasks.remove(target)
        for item in tasks:
            if item.section is None:
                item.section = item.state
        target.section = state
        tasks.append(target)

        rendered = self._render_task_section(preamble, tasks)
        self.body = "\n".join([*lines[:start], *rendered, *lines[end:]])
        if not self.body.endswith("\n"):
            self.body += "\n"
        return target

    def append_iteration(self, record: IterationRecord) -> None:
        self._append_to_section("Iteration Log", record.render())

    def touch(self) -> None:
        self.front_matter["updated"] = utcnow_iso()
        self.front_matter.setdefault("name", self.name)

    def save(self) -> None:
        self.touch()
        atomic_write_text(self.path, self.text())

    @staticmethod
    def _task_preamble(section_lines: list[str]) -> list[str]:
        preamble: list[str] = []
        for line in section_lines:
            if CHECKBOX_PATTERN.match(line) or STATE_HEADING_PATTERN.match(line):
                break
            preamble.append(line)
        while preamble and not preamble[-1].strip():
            preamble.pop()
        while preamble and not preamble[0].strip():
            preamble.pop(0)
        return preamble

    @staticmethod
    def _render_task_section(preamble: list[str], tasks: list[Task]) -> list[str]:
        rendered: list[str] = [""]
        if preamble:
            rendered.extend([*preamble, ""])
        for state in TaskState:
            rendered.append(f"### {state.heading}")
            for task in tasks:
                if task.section == state:
                    rendered.extend(task.render())
            rendered.append("")
        return rendered

    def _append_to_section(self, title: str, block: str) -> None:
        lines = self.body.rstrip("\n").splitlines()
        bounds = section_bounds(lines, title)
        if bounds is None:
            if title == "Notes":
                log_bounds = section_bounds(lines, "Iteration Log")
                if log_bounds is not None:
                    insert_at = log_bounds[0] - 1
                    lines[insert_at:insert_at] = [f"## {title}", "", block, ""]
                    self.body = "\n".join(lines) + "\n"
                    return
            lines.extend(["", f"## {title}", "", block])
            self.body = "\n".join(lines) + "\n"
            return

        start, end = bounds
        insert_at = end
        while insert_at > start and not lines[insert_at - 1].strip():
            insert_at -= 1
        addition = ["", block]
        if end < len(lines):
            addition.append("")
        lines[insert_at:end] = addition
        self.body = "\n".join(lines) + "\n"
