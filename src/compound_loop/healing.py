"""Retry policy for a single task attempt.

States: ATTEMPTING -> SUCCEEDED, or ATTEMPTING -> RETRYING -> ATTEMPTING, or
ATTEMPTING -> BLOCKED. The error text of a failed attempt is handed to the
next attempt as a value so the agent sees exactly what went wrong.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from compound_loop.backends.base import BackendExecutionError, BackendTimeoutError
from compound_loop.config import DEFAULT_UNFIXABLE_PATTERNS

logger = logging.getLogger(__name__)


class HealState(StrEnum):
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    BLOCKED = "blocked"
    SUCCEEDED = "succeeded"


@dataclass(slots=True, frozen=True)
class AttemptResult:
    """Outcome of one attempt.

    ``error`` is handed to the next attempt verbatim. Only ``diagnostic`` (or
    ``error`` when it is unset) is checked for unfixable markers, and a
    ``transient`` failure is never checked at all.
    """

    ok: bool
    output: str = ""
    error: str = ""
    fatal: bool = False
    payload: Any = None
    transient: bool = False
    diagnostic: str | None = None

    def classification_text(self) -> str:
        if self.transient:
            return ""
        return self.error if self.diagnostic is None else self.diagnostic


@dataclass(slots=True, frozen=True)
class ErrorClassifier:
    patterns: tuple[str, ...] = tuple(DEFAULT_UNFIXABLE_PATTERNS)

    @classmethod
    def from_patterns(cls, patterns: Iterable[str]) -> ErrorClassifier:
        cleaned = tuple(item.strip().lower() for item in patterns if item and item.strip())
        return cls(patterns=cleaned)

    def match(self, text: str) -> str | None:
        """Return the first unfixable marker found in ``text``."""
        lowered = text.lower()
        for pattern in self.patterns:
            if pattern in lowered:
                return pattern
        return None


@dataclass(slots=True)
class HealOutcome:
    state: HealState
    attempts: int
    result: AttemptResult | None = None
    reason: str = ""
    errors: list[str] = field(default_factory=list)
    history: list[HealState] = field(default_factory=list)
    exhausted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state == HealState.SUCCEEDED

    @property
    def recovered(self) -> bool:
        return self.succeeded and bool(self.errors)

    @property
    def last_error(self) -> str:
        return self.errors[-1] if self.errors else ""


AttemptFn = Callable[[str | None, int], Awaitable[AttemptResult]]
RecoveryHook = Callable[[str, AttemptResult], None]
HealEventHook = Callable[[dict[str, Any]], None]


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:300]
    return ""


class SelfHealingPolicy:
    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        classifier: ErrorClassifier | None = None,
        event_hook: HealEventHook | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.classifier = classifier or ErrorClassifier()
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def backoff_for(self, attempt: int) -> float:
        """Delay before retrying after failed ``attempt`` (1-based); doubles each time."""
        return self.backoff_seconds * (2 ** (attempt - 1))

    async def _attempt(
        self, attempt: AttemptFn, error_context: str | None, counter: int
    ) -> AttemptResult:
        try:
            return await attempt(error_context, counter)
        except BackendTimeoutError as exc:
            return AttemptResult(ok=False, error=str(exc), transient=True)
        except BackendExecutionError as exc:
            return AttemptResult(ok=False, error=str(exc), fatal=not exc.retriable)
        except Exception as exc:
            logger.exception("Attempt %d raised unexpectedly", counter)
            return AttemptResult(ok=False, error=f"{type(exc).__name__}: {exc}")

    async def run(
        self,
        attempt: AttemptFn,
        *,
        on_recovered: RecoveryHook | None = None,
    ) -> HealOutcome:
        outcome = HealOutcome(state=HealState.ATTEMPTING, attempts=0)
        outcome.history.append(HealState.ATTEMPTING)
        error_context: str | None = None
        counter = 1

        while True:
            outcome.attempts = counter
            result = await self._attempt(attempt, error_context, counter)
            outcome.result = result

            if result.ok:
                outcome.state = HealState.SUCCEEDED
                outcome.history.append(HealState.SUCCEEDED)
                self._emit({"event": "heal_succeeded", "attempt": counter})
                if outcome.errors and on_recovered is not None:
                    on_recovered(outcome.last_error, result)
                return outcome

            error_text = result.error.strip() or "Attempt failed without error output."
            outcome.errors.append(error_text)
            marker = self.classifier.match(result.classification_text())
            self._emit(
                {
                    "event": "heal_attempt_failed",
                    "attempt": counter,
                    "unfixable": marker,
                    "fatal": result.fatal,
                    "error": _first_line(error_text),
                }
            )

            if marker is not None or result.fatal:
                label = marker or "non-retriable failure"
                outcome.state = HealState.BLOCKED
                outcome.reason = f"Unfixable error ({label}): {_first_line(error_text)}"
                outcome.history.append(HealState.BLOCKED)
                logger.warning("Blocking task after attempt %d: %s", counter, outcome.reason)
                return outcome

            if counter >= self.max_attempts:
                outcome.exhausted = True
                outcome.state = HealState.BLOCKED
                outcome.reason = (
                    f"Max self-heal attempts reached ({self.max_attempts}): "
                    f"{_first_line(error_text)}"
                )
                outcome.history.append(HealState.BLOCKED)
                logger.warning("Blocking task: %s", outcome.reason)
                return outcome

            outcome.state = HealState.RETRYING
            outcome.history.append(HealState.RETRYING)
            delay = self.backoff_for(counter)
            self._emit({"event": "heal_retry", "attempt": counter, "delay_seconds": delay})
            logger.info("Attempt %d failed; retrying in %.1fs", counter, delay)
            if delay > 0:
                await self._sleep(delay)
            error_context = error_text
            counter += 1
            outcome.state = HealState.ATTEMPTING
            outcome.history.append(HealState.ATTEMPTING)
