from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from compound_loop.state.context_store import DEFAULT_LIMITS

AgentName = Literal["claude", "codex"]
GateCategory = Literal["lint", "type-check", "test", "build"]

CONFIG_FILENAME = "cr.toml"
STATE_DIRNAME = ".cr"
CONTEXT_FILENAME = "context.json"
SPECS_DIRNAME = "specs"

DEFAULT_UNFIXABLE_PATTERNS = [
    "invalid api key",
    "authentication failed",
    "unauthorized",
    "permission denied",
    "eacces",
    "no space left on device",
    "enospc",
    "disk quota exceeded",
    "out of memory",
    "cannot allocate memory",
    "javascript heap out of memory",
    "rate limit",
    "rate_limit",
    "too many requests",
    "usage limit",
    "sigkill",
    "signal 9",
]

# Environment variables that override [loop]; the CR_ prefixed name wins.
LOOP_ENV_KEYS = {
    "max_iterations": ("CR_MAX_ITERATIONS", "MAX_ITERATIONS"),
    "iteration_delay": ("CR_ITERATION_DELAY", "ITERATION_DELAY"),
    "max_retries": ("CR_MAX_RETRIES", "MAX_RETRIES"),
    "retry_backoff": ("CR_RETRY_BACKOFF", "RETRY_BACKOFF"),
    "iteration_timeout": ("CR_ITERATION_TIMEOUT", "ITERATION_TIMEOUT"),
    "max_consecutive_failures": ("CR_MAX_CONSECUTIVE_FAILURES", "MAX_CONSECUTIVE_FAILURES"),
}


class ConfigError(ValueError):
    """Raised when configuration values cannot be used."""


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 50
    iteration_delay: int = 3
    max_retries: int = 3
    retry_backoff: int = 5
    iteration_timeout: int = 600
    max_consecutive_failures: int = 3


@dataclass(slots=True)
class AgentConfig:
    name: AgentName = "claude"
    binary: str = ""
    model: str = ""
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ContextConfig:
    limits: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_LIMITS))


@dataclass(slots=True)
class HealingConfig:
    unfixable_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_UNFIXABLE_PATTERNS)
    )


@dataclass(slots=True)
class GateConfig:
    name: str
    command: str
    category: GateCategory = "test"


@dataclass(slots=True)
class LoopSettings:
    loop: LoopConfig = field(default_factory=LoopConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    healing: HealingConfig = field(default_factory=HealingConfig)
    gates: list[GateConfig] = field(default_factory=list)

    @classmethod
    def default(cls) -> LoopSettings:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> LoopSettings:
        limits = dict(DEFAULT_LIMITS)
        limits.update(data.get("context", {}).get("limits", {}))
        try:
            return cls(
                loop=LoopConfig(**data.get("loop", {})),
                agent=AgentConfig(**data.get("agent", {})),
                context=ContextConfig(limits=limits),
                healing=HealingConfig(**data.get("healing", {})),
                gates=[GateConfig(**item) for item in data.get("gates", [])],
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "iteration_delay": self.loop.iteration_delay,
                "max_retries": self.loop.max_retries,
                "retry_backoff": self.loop.retry_backoff,
                "iteration_timeout": self.loop.iteration_timeout,
                "max_consecutive_failures": self.loop.max_consecutive_failures,
            },
            "agent": {
                "name": self.agent.name,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "extra_args": list(self.agent.extra_args),
            },
            "context": {"limits": dict(self.context.limits)},
            "healing": {"unfixable_patterns": list(self.healing.unfixable_patterns)},
            "gates": [
                {"name": gate.name, "command": gate.command, "category": gate.category}
                for gate in self.gates
            ],
        }

    def apply_env(self, environ: Mapping[str, str] | None = None) -> LoopSettings:
        """Override [loop] values from the environment."""
        env = os.environ if environ is None else environ
        for attribute, names in LOOP_ENV_KEYS.items():
            for name in names:
                raw = env.get(name)
                if raw is None or not raw.strip():
                    continue
                try:
                    value = int(raw.strip())
                except ValueError as exc:
                    raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
                if value < 0:
                    raise ConfigError(f"{name} must not be negative, got {value}")
                setattr(self.loop, attribute, value)
                break
        return self


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: LoopSettings) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["loop", "agent", "healing"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    lines.append("[context.limits]")
    for key, value in data["context"]["limits"].items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")
    for gate in data["gates"]:
        lines.append("[[gates]]")
        for key, value in gate.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> LoopSettings:
    if not path.exists():
        return LoopSettings.default().apply_env(environ)
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path} is not valid TOML: {exc}") from exc
    return LoopSettings.from_dict(data).apply_env(environ)


def save_config(path: Path, config: LoopSettings) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
