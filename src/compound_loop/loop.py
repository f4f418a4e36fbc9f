from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from compound_loop.backends.base import AgentBackend, BackendTimeoutError
from compound_loop.config import LoopSettings
from compound_loop.gates import GateReport, QualityGate, QualityGateRunner
from compound_loop.healing import (
    AttemptResult,
    ErrorClassifier,
    HealOutcome,
    SelfHealingPolicy,
)
from compound_loop.prompts import extract_learnings, render_instructions
from compound_loop.state import (
    ContextStore,
    IterationOutcome,
    IterationRecord,
    SpecDocument,
    SpecStatus,
)
from compound_loop.tracker import Task, TaskState, select_task

logger = logging.getLogger(__name__)

SIGKILL_EXIT_CODES = {137, -9}


class LoopError(RuntimeError):
    """Raised when a spec document cannot be driven by the loop."""


class LoopStatus(StrEnum):
    COMPLETE = "complete"
    MAX_ITERATIONS = "max_iterations"
    BLOCKED = "blocked"


@dataclass(slots=True, frozen=True)
class IterationSummary:
    status: LoopStatus
    iterations: int
    spec: str
    learnings: int

    @property
    def exit_code(self) -> int:
        return 0 if self.status == LoopStatus.COMPLETE else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "iterations": self.iterations,
            "spec": self.spec,
            "learnings": self.learnings,
        }


@dataclass(slots=True, frozen=True)
class PassResult:
    outcome: IterationOutcome | None = None
    finished: LoopStatus | None = None
    task: str = ""


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate.strip('"')


def changed_paths(repo_root: Path) -> set[str]:
    """Paths git reports as modified or untracked; empty outside a git work tree."""
    try:
        proc = subprocess.run(
            ["git", "--no-pager", "status", "--porcelain", "--untracked-files=all"],
            cwd=repo_root,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError:
        return set()
    if proc.returncode != 0:
        return set()
    return {
        path
        for path in (_status_line_path(line) for line in proc.stdout.splitlines() if line.strip())
        if path
    }


class IterationLoop:
    """Drives one spec document until it is complete or a limit is hit.

    Every pass reloads the spec and the context store from disk, works on
    exactly one task and writes both back before the next pass starts.
    """

    def __init__(
        self,
        spec_location: Path,
        *,
        project_root: Path,
        backend: AgentBackend,
        settings: LoopSettings,
        context_path: Path,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.spec_path = SpecDocument.resolve_path(spec_location)
        self.project_root = project_root.resolve()
        self.backend = backend
        self.settings = settings
        self.context_path = context_path
        self.gates = [QualityGate.from_config(gate) for gate in settings.gates]
        self.classifier = ErrorClassifier.from_patterns(settings.healing.unfixable_patterns)
        self._sleep = sleep
        self._learnings_added = 0

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("event %s", event)

    def _load_document(self) -> SpecDocument:
        document = SpecDocument.load(self.spec_path)
        if not document.has_task_section():
            raise LoopError(f"{self.spec_path} has no '## Tasks' section.")
        if document.counts().total == 0:
            raise LoopError(f"{self.spec_path} has no tasks to work on.")
        return document

    def _load_context(self) -> ContextStore:
        return ContextStore.open(self.context_path, limits=self.settings.context.limits)

    def _summary(self, status: LoopStatus) -> IterationSummary:
        document = SpecDocument.load(self.spec_path)
        return IterationSummary(
            status=status,
            iterations=document.iteration_count,
            spec=document.name,
            learnings=self._learnings_added,
        )

    def _finish(self, document: SpecDocument, status: SpecStatus) -> None:
        document.status = status
        document.save()

    async def run(self) -> IterationSummary:
        self._load_document()
        limits = self.settings.loop
        consecutive_failures = 0
        passes = 0

        while passes < limits.max_iterations:
            passes += 1
            logger.info("Starting pass %d/%d for %s", passes, limits.max_iterations, self.spec_path)
            result = await self.run_pass()
            if result.finished is not None:
                return self._summary(result.finished)

            if result.outcome in {IterationOutcome.BLOCKED, IterationOutcome.FAILED}:
                consecutive_failures += 1
            else:
                consecutive_failures = 0
            if consecutive_failures >= max(1, limits.max_consecutive_failures):
                logger.error(
                    "Stopping after %d consecutive failed iterations", consecutive_failures
                )
                self._finish(SpecDocument.load(self.spec_path), SpecStatus.BLOCKED)
                return self._summary(LoopStatus.BLOCKED)

            if passes < limits.max_iterations and limits.iteration_delay > 0:
                await self._sleep(limits.iteration_delay)

        document = SpecDocument.load(self.spec_path)
        if document.all_tasks_complete():
            self._finish(document, SpecStatus.COMPLETE)
            return self._summary(LoopStatus.COMPLETE)
        logger.warning("Reached max iterations (%d)", limits.max_iterations)
        return self._summary(LoopStatus.MAX_ITERATIONS)

    async def run_pass(self) -> PassResult:
        document = self._load_document()
        context = self._load_context()

        if document.all_tasks_complete():
            logger.info("All tasks complete in %s", document.name)
            self._finish(document, SpecStatus.COMPLETE)
            return PassResult(finished=LoopStatus.COMPLETE)

        task = select_task(document.tasks())
        if task is None:
            logger.error("No workable tasks left in %s; remaining tasks are blocked", document.name)
            self._finish(document, SpecStatus.BLOCKED)
            return PassResult(finished=LoopStatus.BLOCKED)

        if task.state != TaskState.IN_PROGRESS:
            task = document.move_task(task, TaskState.IN_PROGRESS)
        document.status = SpecStatus.BUILDING
        document.save()

        iteration = document.iteration_count + 1
        before = changed_paths(self.project_root)
        reports: list[GateReport] = []

        outcome = await self._heal(task, iteration, context, reports, spec_name=document.name)

        document = SpecDocument.load(self.spec_path)
        document.set_continuation(document.continuation() or None)
        current = document.find_task(task.label, task.index)
        files = tuple(sorted(changed_paths(self.project_root) - before))
        output = outcome.result.output if outcome.result is not None else ""

        learning = ""
        if outcome.succeeded:
            for category, text in extract_learnings(output):
                context.append(category, text, spec=document.name, iteration=iteration)
                self._learnings_added += 1
                learning = learning or text
            result_outcome = self._complete_task(document, current, task)
        else:
            result_outcome = (
                IterationOutcome.FAILED if outcome.exhausted else IterationOutcome.BLOCKED
            )
            if current is not None:
                document.move_task(current, TaskState.BLOCKED, reason=outcome.reason)
            learning = outcome.reason
            context.append(
                "gotcha",
                f"Task '{task.label}' {result_outcome.value}: {outcome.reason}",
                spec=document.name,
                iteration=iteration,
                error=outcome.last_error,
            )

        document.increment_iteration()
        document.append_iteration(
            IterationRecord(
                number=document.iteration_count,
                task=task.label,
                outcome=result_outcome,
                files=files,
                tests=reports[-1].summary() if reports else "not run",
                learning=learning,
                error="" if outcome.succeeded else outcome.last_error,
            )
        )
        document.status = (
            SpecStatus.COMPLETE if document.all_tasks_complete() else SpecStatus.BUILDING
        )
        context.prune()
        document.save()
        context.save()
        logger.info("Iteration %d finished: %s (%s)", iteration, result_outcome, task.label)
        return PassResult(outcome=result_outcome, task=task.label)

    def _complete_task(
        self, document: SpecDocument, current: Task | None, selected: Task
    ) -> IterationOutcome:
        if current is None:
            logger.warning("Task %r disappeared from the spec during the iteration", selected.label)
            return IterationOutcome.SUCCESS
        if current.children and not current.complete:
            return IterationOutcome.PARTIAL
        document.move_task(current, TaskState.COMPLETED)
        document.set_continuation(None)
        return IterationOutcome.SUCCESS

    async def _heal(
        self,
        task: Task,
        iteration: int,
        context: ContextStore,
        reports: list[GateReport],
        *,
        spec_name: str,
    ) -> HealOutcome:
        limits = self.settings.loop
        policy = SelfHealingPolicy(
            max_attempts=limits.max_retries,
            backoff_seconds=limits.retry_backoff,
            classifier=self.classifier,
            event_hook=self._emit,
            sleep=self._sleep,
        )
        runner = QualityGateRunner(self.gates, self.project_root)

        async def attempt(error_context: str | None, counter: int) -> AttemptResult:
            document = SpecDocument.load(self.spec_path)
            current = document.find_task(task.label, task.index) or task
            instructions = render_instructions(
                spec_path=self.spec_path,
                task=current,
                iteration=iteration,
                context=context,
                continuation=document.continuation(),
                gate_names=[gate.name for gate in self.gates],
                error_context=error_context,
                attempt=counter,
                max_attempts=policy.max_attempts,
            )
            # A timeout of 0 disables the per-iteration budget.
            timeout = float(limits.iteration_timeout) or None
            deadline = time.monotonic() + timeout if timeout else None
            try:
                result = await asyncio.wait_for(
                    self.backend.invoke(instructions, self.project_root), timeout=timeout
                )
            except TimeoutError as exc:
                raise BackendTimeoutError(
                    f"Iteration timed out after {timeout:.0f}s.", backend=self.backend.name
                ) from exc

            if not result.ok:
                error = result.failure_text()
                diagnostic = result.diagnostic_text()
                if result.exit_code in SIGKILL_EXIT_CODES:
                    error += "\nAgent process was terminated by SIGKILL."
                    diagnostic += "\nAgent process was terminated by SIGKILL."
                return AttemptResult(
                    ok=False, output=result.output, error=error, diagnostic=diagnostic
                )

            report = await asyncio.to_thread(runner.run, deadline=deadline)
            reports.append(report)
            if not report.passed:
                # Gate output goes back to the agent but is never classified as unfixable.
                return AttemptResult(
                    ok=False,
                    output=result.output,
                    error=report.failure_text(),
                    payload=report,
                    transient=True,
                )
            return AttemptResult(ok=True, output=result.output, payload=report)

        def on_recovered(error: str, result: AttemptResult) -> None:
            fix = next((line.strip() for line in result.output.splitlines() if line.strip()), "")
            context.append(
                "error_fix",
                f"Recovered '{task.label}' after a failed attempt",
                spec=spec_name,
                iteration=iteration,
                error=error,
                fix=fix or "retried with the failure output as context",
            )
            self._learnings_added += 1

        return await policy.run(attempt, on_recovered=on_recovered)
