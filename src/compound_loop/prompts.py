from __future__ import annotations

import re
from pathlib import Path

from compound_loop.state.context_store import ContextStore
from compound_loop.tracker import Task

LEARNING_PATTERN = re.compile(
    r"^\s*(?:[-*]\s*)?(?P<tag>LEARNING|PATTERN|DISCOVERY|GOTCHA|FIX)\s*:\s*(?P<text>.+?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
MAX_INJECTED_ERROR_CHARS = 4000

INSTRUCTIONS_TEMPLATE = """
You are one iteration of an autonomous build loop. Work on exactly one task
from the spec below, then stop. The next iteration starts from a fresh
process and only sees what is written to disk.

Spec file: {spec_path}
Iteration: {iteration}

## Current Task
{task}

## Continuation Note
{continuation}

## Accumulated Context
{context}

## Rules
- Only work on the current task. Check off each sub-task in the spec file
  as soon as it is done.
- If you cannot finish, leave a single note for the next iteration in the
  spec file as <!-- CONTINUATION: what is done and what remains -->.
- Run build, lint and test commands one at a time, never in parallel.
  Read-only searches may run in parallel, at most {fan_out} at once.
- Quality gates run after you finish: {gates}.
- Report what you learned as lines starting with LEARNING:, PATTERN:,
  DISCOVERY:, GOTCHA: or FIX:.
""".strip()

ERROR_CONTEXT_TEMPLATE = """
## Previous Attempt Failed (attempt {attempt} of {max_attempts})
The last attempt at this task failed with the output below. Fix the cause
before doing anything else.

```
{error}
```
""".strip()


def render_task(task: Task) -> str:
    lines = [f"- [{'x' if task.done else ' '}] {task.label}"]
    for child in task.children:
        lines.append(f"  - [{'x' if child.done else ' '}] {child.label}")
    return "\n".join(lines)


def render_instructions(
    *,
    spec_path: Path,
    task: Task,
    iteration: int,
    context: ContextStore,
    continuation: str = "",
    gate_names: list[str] | None = None,
    error_context: str | None = None,
    attempt: int = 1,
    max_attempts: int = 1,
    fan_out: int = 10,
) -> str:
    instructions = INSTRUCTIONS_TEMPLATE.format(
        spec_path=spec_path,
        iteration=iteration,
        task=render_task(task),
        continuation=continuation or "None",
        context=context.render(),
        fan_out=fan_out,
        gates=", ".join(gate_names) if gate_names else "none configured",
    )
    if error_context:
        error_block = ERROR_CONTEXT_TEMPLATE.format(
            attempt=attempt,
            max_attempts=max_attempts,
            error=error_context.strip()[-MAX_INJECTED_ERROR_CHARS:].replace("```", "'''"),
        )
        instructions = f"{instructions}\n\n{error_block}"
    return instructions


def extract_learnings(output: str) -> list[tuple[str, str]]:
    """Return ``(category, text)`` pairs reported by the agent."""
    found: list[tuple[str, str]] = []
    for match in LEARNING_PATTERN.finditer(output):
        found.append((match.group("tag").lower(), match.group("text")))
    return found
