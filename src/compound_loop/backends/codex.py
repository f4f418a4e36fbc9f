from __future__ import annotations

from compound_loop.backends.base import CliAgentBackend


class CodexBackend(CliAgentBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(self, instructions: str) -> list[str]:
        command = [self.binary, "exec", "--json"]
        if self.model.strip():
            command.extend(["-m", self.model.strip()])
        command.extend(self.extra_args)
        command.append(instructions)
        return command
