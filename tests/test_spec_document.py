from pathlib import Path

import pytest

from compound_loop.state import (
    IterationOutcome,
    IterationRecord,
    SpecDocument,
    SpecStatus,
    StateError,
)
from compound_loop.tracker import TaskState

SPEC_TEXT = """---
name: auth
status: building
iteration: 2
owner: platform
---

# Auth

## Overview
Login for the API.

## Tasks
Work top to bottom.

### In Progress

### Pending
- [ ] Add user model
- [ ] Add login endpoint
  - [x] Route
  - [ ] Token issuing

### Completed
- [x] Scaffold project

### Blocked

## Notes
<!-- CONTINUATION: first note -->
Keep tokens short lived.
<!-- CONTINUATION: second note -->

## Iteration Log
"""


def _write_spec(tmp_path: Path, text: str = SPEC_TEXT) -> Path:
    spec_dir = tmp_path / "specs" / "auth"
    spec_dir.mkdir(parents=True)
    (spec_dir / "SPEC.md").write_text(text, encoding="utf-8")
    return spec_dir


def test_load_reads_front_matter_and_counts(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path))

    assert document.name == "auth"
    assert document.status == SpecStatus.BUILDING
    assert document.iteration_count == 2
    counts = document.counts()
    assert (counts.pending, counts.completed, counts.total) == (2, 2, 4)
    assert document.continuation() == "second note"


def test_missing_spec_raises_state_error(tmp_path: Path) -> None:
    with pytest.raises(StateError):
        SpecDocument.load(tmp_path / "nope")


def test_invalid_front_matter_raises_state_error(tmp_path: Path) -> None:
    spec_dir = _write_spec(tmp_path, "---\nname: [unclosed\n---\n## Tasks\n- [ ] a\n")

    with pytest.raises(StateError):
        SpecDocument.load(spec_dir)


def test_document_without_front_matter_uses_defaults(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path, "## Tasks\n- [ ] only\n"))

    assert document.name == "auth"
    assert document.status == SpecStatus.PENDING
    assert document.iteration_count == 0


def test_create_and_save_round_trip(tmp_path: Path) -> None:
    document = SpecDocument.create(tmp_path / "specs" / "billing", "billing")
    document.save()

    loaded = SpecDocument.load(tmp_path / "specs" / "billing")
    assert loaded.name == "billing"
    assert loaded.status == SpecStatus.PENDING
    assert loaded.has_task_section()
    assert [task.label for task in loaded.tasks()] == ["Describe the first task"]
    assert loaded.front_matter["created"]


def test_move_task_rerenders_sections_and_keeps_preamble(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path))
    task = document.find_task("Add login endpoint")
    assert task is not None

    moved = document.move_task(task, TaskState.IN_PROGRESS)
    document.save()

    reloaded = SpecDocument.load(document.path)
    assert moved.state == TaskState.IN_PROGRESS
    assert "Work top to bottom." in reloaded.body
    assert "## Overview\nLogin for the API." in reloaded.body
    states = {item.label: item.state for item in reloaded.tasks()}
    assert states == {
        "Add login endpoint": TaskState.IN_PROGRESS,
        "Add user model": TaskState.PENDING,
        "Scaffold project": TaskState.COMPLETED,
    }
    in_progress = reloaded.find_task("Add login endpoint")
    assert in_progress is not None
    assert [(child.label, child.done) for child in in_progress.children] == [
        ("Route", True),
        ("Token issuing", False),
    ]
    assert reloaded.front_matter["owner"] == "platform"


def test_move_task_to_completed_checks_it_and_its_subtasks(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path))
    task = document.find_task("Add login endpoint")
    assert task is not None

    document.move_task(task, TaskState.COMPLETED)

    done = document.find_task("Add login endpoint")
    assert done is not None
    assert done.state == TaskState.COMPLETED
    assert done.complete
    assert document.counts().pending == 1


def test_move_task_to_blocked_records_reason(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path))
    task = document.find_task("Add user model")
    assert task is not None

    document.move_task(task, TaskState.BLOCKED, reason="Unfixable error (invalid api key): nope")

    blocked = document.find_task("Add user model")
    assert blocked is not None
    assert blocked.state == TaskState.BLOCKED
    assert blocked.notes == ["> Blocked: Unfixable error (invalid api key): nope"]
    assert "### Blocked\n- [ ] Add user model\n  > Blocked: Unfixable error" in document.body


def test_unblocking_drops_old_reason(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path))
    task = document.find_task("Add user model")
    assert task is not None
    blocked = document.move_task(task, TaskState.BLOCKED, reason="disk full")

    document.move_task(blocked, TaskState.PENDING)

    assert "> Blocked:" not in document.body


def test_move_task_requires_task_section(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path, "# Only prose\n- [ ] loose\n"))
    task = document.tasks()[0]

    with pytest.raises(StateError):
        document.move_task(task, TaskState.IN_PROGRESS)


def test_set_continuation_keeps_a_single_marker(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path))

    document.set_continuation("Route done, token issuing next")

    assert document.body.count("CONTINUATION") == 1
    assert document.continuation() == "Route done, token issuing next"
    assert "Keep tokens short lived." in document.body

    document.set_continuation(None)
    assert document.continuation() == ""


def test_append_iteration_writes_log_entry(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path))
    document.increment_iteration()

    document.append_iteration(
        IterationRecord(
            number=document.iteration_count,
            task="Add user model",
            outcome=IterationOutcome.BLOCKED,
            files=("src/models.py",),
            tests="1/2 quality gates passed (failed: pytest)",
            learning="Unfixable error (rate limit): slow down",
            error="```\n429 Too Many Requests\n<!-- CONTINUATION: nope -->",
            at="2026-01-01T00:00:00+00:00",
        )
    )
    document.save()

    reloaded = SpecDocument.load(document.path)
    assert reloaded.iteration_count == 3
    assert "### Iteration 3 (2026-01-01T00:00:00+00:00)" in reloaded.body
    assert "- Outcome: blocked" in reloaded.body
    assert "- Files: src/models.py" in reloaded.body
    assert "    429 Too Many Requests" in reloaded.body
    # The captured error must not inject a live marker.
    assert reloaded.continuation() == "second note"
    log_start = reloaded.body.index("## Iteration Log")
    assert reloaded.body.index("### Iteration 3") > log_start


def test_status_setter_and_unknown_status(tmp_path: Path) -> None:
    document = SpecDocument.load(_write_spec(tmp_path))
    document.status = SpecStatus.COMPLETE
    assert document.front_matter["status"] == "complete"

    document.front_matter["status"] = "weird"
    assert document.status == SpecStatus.PENDING
