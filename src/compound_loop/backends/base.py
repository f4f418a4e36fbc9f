from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when an agent process cannot be run to completion."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when an agent invocation exceeds its time budget."""


class BackendProcessError(BackendExecutionError):
    """Raised when the agent process cannot be started."""


@dataclass(slots=True, frozen=True)
class AgentResult:
    exit_code: int
    output: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def failure_text(self) -> str:
        parts = [self.diagnostic_text()]
        if self.output.strip():
            parts.append(self.output.strip()[-2000:])
        return "\n".join(parts)

    def diagnostic_text(self) -> str:
        """Exit status and stderr only; the agent's own narrative is left out."""
        parts = [f"Agent exited with code {self.exit_code}."]
        if self.stderr.strip():
            parts.append(self.stderr.strip()[-2000:])
        return "\n".join(parts)


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def invoke(self, instructions: str, working_directory: Path) -> AgentResult:
        """Run the agent once against ``working_directory`` and capture its result."""


def extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    result = event.get("result")
    if isinstance(result, str):
        return result

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_content(message)

    item = event.get("item")
    if isinstance(item, dict):
        text = item.get("text")
        if isinstance(text, str):
            return text
    return ""


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def parse_stream_line(parse_buffer: str, line: str) -> tuple[str, str | None]:
    """Feed one JSON-lines output line; return ``(new_buffer, text_or_None)``."""
    candidate = f"{parse_buffer}{line}" if parse_buffer else line
    try:
        event = json.loads(candidate)
    except json.JSONDecodeError:
        if appears_partial_json(candidate):
            return candidate, None
        return "", line
    if not isinstance(event, dict):
        return "", None
    return "", extract_content(event) or None


BackendEventHook = Callable[[dict[str, Any]], None]


class CliAgentBackend(AgentBackend):
    """Runs an agent CLI that prints JSON lines and collects the text it streams."""

    default_binary = ""

    def __init__(
        self,
        binary: str | None = None,
        *,
        model: str = "",
        extra_args: list[str] | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary or self.default_binary
        self.model = model
        self.extra_args = list(extra_args or [])
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, instructions: str) -> list[str]:
        """Return the argv used to invoke the agent."""

    async def invoke(self, instructions: str, working_directory: Path) -> AgentResult:
        command = self.build_command(instructions)
        self._emit({"event": f"{self.name}_cli_start", "command": command[:3]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        # stderr is drained alongside stdout so a chatty agent cannot fill the pipe and stall.
        stderr_task: asyncio.Task[bytes] | None = None
        if process.stderr is not None:
            stderr_task = asyncio.create_task(process.stderr.read())

        chunks: list[str] = []
        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                parse_buffer, text = parse_stream_line(parse_buffer, line)
                if text:
                    chunks.append(text)
            if parse_buffer:
                self._emit({"event": f"{self.name}_json_buffer_flush", "bytes": len(parse_buffer)})
                chunks.append(parse_buffer)

            stderr_output = ""
            if stderr_task is not None:
                stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
            return_code = await process.wait()
        finally:
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()

        self._emit({"event": f"{self.name}_cli_exit", "exit_code": return_code})
        return AgentResult(
            exit_code=return_code,
            output="\n".join(chunks).strip(),
            stderr=stderr_output,
        )
