from __future__ import annotations

from compound_loop.backends.base import CliAgentBackend


class ClaudeCodeBackend(CliAgentBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(self, instructions: str) -> list[str]:
        command = [
            self.binary,
            "-p",
            instructions,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if self.model:
            command.extend(["--model", self.model])
        command.extend(self.extra_args)
        return command
