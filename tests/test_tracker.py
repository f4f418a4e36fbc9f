import pytest

from compound_loop.tracker import (
    TaskCounts,
    TaskState,
    all_tasks_complete,
    count_tasks,
    get_continuation_marker,
    parse_tasks,
    select_task,
)


def _counts(text: str) -> tuple[int, int, int]:
    counts = count_tasks(text)
    return counts.pending, counts.completed, counts.total


def test_flat_tasks_count_each_checkbox() -> None:
    text = "- [ ] Task 1\n- [x] Task 2\n- [ ] Task 3\n"

    assert _counts(text) == (2, 1, 3)


def test_parent_is_counted_through_its_subtasks() -> None:
    text = (
        "- [ ] Task 1\n"
        "  - [ ] Sub 1a\n"
        "  - [ ] Sub 1b\n"
        "  - [ ] Sub 1c\n"
        "- [x] Task 2\n"
    )

    assert _counts(text) == (3, 1, 4)


def test_partially_complete_parent() -> None:
    text = "- [ ] Task 1\n  - [x] Sub 1a\n  - [x] Sub 1b\n  - [ ] Sub 1c\n"

    assert _counts(text)[:2] == (1, 2)


def test_parent_checkbox_state_is_ignored_when_it_has_subtasks() -> None:
    text = "- [x] Task 1\n  - [x] Sub 1a\n  - [x] Sub 1b\n  - [x] Sub 1c\n"

    assert _counts(text)[:2] == (0, 3)
    assert _counts("- [x] Parent\n  - [ ] Child\n") == (1, 0, 1)


def test_mixed_flat_and_nested_tasks() -> None:
    text = (
        "- [x] Flat done\n"
        "- [ ] Parent\n"
        "  - [x] Child done\n"
        "  - [ ] Child todo\n"
        "- [ ] Flat todo\n"
        "- [x] Another done\n"
    )

    assert _counts(text)[:2] == (2, 4)


def test_end_to_end_three_subtasks_and_flat_task() -> None:
    text = "- [ ] Task 1\n  - [x] Sub 1a\n  - [x] Sub 1b\n  - [ ] Sub 1c\n- [x] Task 2\n"

    assert _counts(text) == (1, 3, 4)


def test_four_space_and_tab_indentation_nests() -> None:
    assert _counts("- [ ] Task\n    - [x] Sub a\n    - [ ] Sub b\n")[:2] == (1, 1)
    assert _counts("- [ ] Task\n\t- [x] Sub a\n")[:2] == (0, 1)


def test_deeper_nesting_folds_into_parent() -> None:
    text = "- [ ] Task\n  - [x] Sub\n    - [ ] Sub-sub\n"

    tasks = parse_tasks(text)
    assert len(tasks) == 1
    assert [child.label for child in tasks[0].children] == ["Sub", "Sub-sub"]
    assert _counts(text) == (1, 1, 2)


def test_star_bullets_and_uppercase_marks() -> None:
    assert _counts("* [X] done\n+ [ ] todo\n") == (1, 1, 2)


def test_no_tasks_counts_zero() -> None:
    assert _counts("No tasks here.") == (0, 0, 0)


def test_zero_tasks_is_vacuously_complete() -> None:
    assert all_tasks_complete("No tasks here.") is True


def test_all_tasks_complete() -> None:
    assert all_tasks_complete("- [x] Task 1\n  - [ ] Sub\n- [x] Task 2\n") is False
    assert all_tasks_complete("- [x] Task 1\n  - [x] Sub\n- [x] Task 2\n") is True


def test_checkboxes_inside_code_fences_are_ignored() -> None:
    text = "- [ ] Real\n```\n- [ ] Example in code\n```\n"

    assert _counts(text) == (1, 0, 1)


def test_task_section_limits_counting() -> None:
    text = (
        "# Feature\n\n"
        "## Requirements\n- [ ] not a task\n\n"
        "## Tasks\n### Pending\n- [ ] one\n### Completed\n- [x] two\n\n"
        "## Notes\n- [ ] also not a task\n"
    )

    assert _counts(text) == (1, 1, 2)


def test_continuation_marker_missing() -> None:
    assert get_continuation_marker("- [ ] Task\n") == ""


def test_continuation_marker_is_trimmed() -> None:
    text = (
        "## Notes\n"
        "<!-- CONTINUATION: Built user model. Still need login endpoint and JWT. "
        "Working in src/auth/   -->\n"
    )

    assert get_continuation_marker(text) == (
        "Built user model. Still need login endpoint and JWT. Working in src/auth/"
    )


def test_continuation_marker_last_one_wins() -> None:
    text = "<!-- CONTINUATION: old -->\n<!-- CONTINUATION:\n  X\n-->\n"

    assert get_continuation_marker(text) == "X"


def test_select_task_prefers_in_progress() -> None:
    text = (
        "## Tasks\n"
        "### In Progress\n- [ ] Started earlier\n"
        "### Pending\n- [ ] Newer pending\n"
    )

    task = select_task(parse_tasks(text))
    assert task is not None
    assert task.label == "Started earlier"
    assert task.state == TaskState.IN_PROGRESS


def test_select_task_skips_blocked_and_completed() -> None:
    text = (
        "## Tasks\n"
        "### Pending\n"
        "### Completed\n- [x] done\n"
        "### Blocked\n- [ ] stuck\n  > Blocked: no credentials\n"
    )

    tasks = parse_tasks(text)
    assert select_task(tasks) is None
    assert tasks[1].notes == ["> Blocked: no credentials"]


def test_select_task_without_state_headings_picks_first_unchecked() -> None:
    task = select_task(parse_tasks("- [x] a\n- [ ] b\n- [ ] c\n"))

    assert task is not None
    assert task.label == "b"


def test_counts_add_up() -> None:
    counts = TaskCounts(pending=1, completed=2) + TaskCounts(pending=3)

    assert counts == TaskCounts(pending=4, completed=2)
    assert counts.total == 6
    assert counts.all_complete is False


@pytest.mark.parametrize(
    "text",
    [
        "- [ ] a\n- [x] b\n",
        "- [ ] a\n  - [x] a1\n  - [ ] a2\n- [ ] b\n",
        "* [x] a\n",
    ],
)
def test_pending_plus_completed_equals_total(text: str) -> None:
    pending, completed, total = _counts(text)

    assert pending + completed == total
