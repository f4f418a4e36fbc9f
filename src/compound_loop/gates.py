from __future__ import annotations

import logging
import re
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from compound_loop.config import GateConfig

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
OUTPUT_TAIL_CHARS = 2000
TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True, frozen=True)
class QualityGate:
    name: str
    command: str
    category: str = "test"

    @classmethod
    def from_config(cls, gate: GateConfig) -> QualityGate:
        return cls(name=gate.name, command=gate.command, category=gate.category)


@dataclass(slots=True, frozen=True)
class GateResult:
    gate: QualityGate
    exit_code: int
    output: str
    duration_seconds: float = 0.0
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.gate.name,
            "category": self.gate.category,
            "command": self.gate.command,
            "exit_code": self.exit_code,
            "passed": self.passed,
            "timed_out": self.timed_out,
            "duration_seconds": round(self.duration_seconds, 3),
            "output_tail": self.output[-OUTPUT_TAIL_CHARS:],
        }


@dataclass(slots=True)
class GateReport:
    results: list[GateResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> list[GateResult]:
        return [result for result in self.results if not result.passed]

    def summary(self) -> str:
        if not self.results:
            return "no quality gates configured"
        passed = len(self.results) - len(self.failures)
        text = f"{passed}/{len(self.results)} quality gates passed"
        if self.failures:
            text += " (failed: " + ", ".join(result.gate.name for result in self.failures) + ")"
        return text

    def failure_text(self) -> str:
        blocks: list[str] = []
        for result in self.failures:
            reason = "timed out" if result.timed_out else f"exit code {result.exit_code}"
            blocks.append(
                f"Quality gate '{result.gate.name}' ({result.gate.category}) failed with "
                f"{reason}: {result.gate.command}\n{result.output[-OUTPUT_TAIL_CHARS:]}".rstrip()
            )
        return "\n\n".join(blocks)


class QualityGateRunner:
    """Runs gate commands one at a time and reports every result, not just the first failure."""

    def __init__(self, gates: list[QualityGate], working_directory: Path) -> None:
        self.gates = list(gates)
        self.working_directory = working_directory

    def _run_command(self, command: str, timeout: float | None) -> tuple[int, str, bool]:
        command_text = command.strip()
        if not command_text:
            return 1, "Command is empty.", False

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        try:
            proc = subprocess.run(
                command_payload,
                cwd=self.working_directory,
                shell=used_shell,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            partial = _decode(exc.stdout) + _decode(exc.stderr)
            return TIMEOUT_EXIT_CODE, f"{partial}\nTimed out after {timeout:.0f}s".strip(), True
        except FileNotFoundError as exc:
            return 127, f"Command not found: {exc}", False
        output = "\n".join(part for part in (proc.stdout.strip(), proc.stderr.strip()) if part)
        return proc.returncode, output, False

    def run(self, *, deadline: float | None = None) -> GateReport:
        """Run every gate sequentially; ``deadline`` is a ``time.monotonic`` budget."""
        report = GateReport()
        for gate in self.gates:
            timeout = None
            if deadline is not None:
                timeout = deadline - time.monotonic()
                if timeout <= 0:
                    logger.warning("Skipping quality gate %s: iteration budget exhausted", gate.name)
                    report.results.append(
                        GateResult(
                            gate=gate,
                            exit_code=TIMEOUT_EXIT_CODE,
                            output="Skipped: iteration time budget exhausted",
                            duration_seconds=0.0,
                            timed_out=True,
                        )
                    )
                    continue
            started = time.monotonic()
            exit_code, output, timed_out = self._run_command(gate.command, timeout)
            result = GateResult(
                gate=gate,
                exit_code=exit_code,
                output=output,
                duration_seconds=time.monotonic() - started,
                timed_out=timed_out,
            )
            if result.passed:
                logger.info("Quality gate %s passed", gate.name)
            else:
                logger.warning("Quality gate %s failed (exit %s)", gate.name, exit_code)
            report.results.append(result)
        return report


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
