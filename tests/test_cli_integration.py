import json
import tomllib
from pathlib import Path

import pytest
from click.testing import CliRunner

from compound_loop import cli as cli_module
from compound_loop.backends.base import AgentBackend, AgentResult
from compound_loop.cli import cli
from compound_loop.config import LoopSettings
from compound_loop.state import ContextStore, SpecDocument


class CheckingBackend(AgentBackend):
    """Checks off the first open box in the spec it is pointed at."""

    name = "checking"

    def __init__(self, output: str = "LEARNING: fixtures live in conftest.py") -> None:
        self.output = output

    async def invoke(self, instructions: str, working_directory: Path) -> AgentResult:
        spec_line = next(line for line in instructions.splitlines() if line.startswith("Spec file:"))
        spec_path = Path(spec_line.split(":", 1)[1].strip())
        text = spec_path.read_text(encoding="utf-8")
        spec_path.write_text(text.replace("- [ ]", "- [x]", 1), encoding="utf-8")
        return AgentResult(exit_code=0, output=self.output)


class InterruptingBackend(AgentBackend):
    async def invoke(self, instructions: str, working_directory: Path) -> AgentResult:
        raise KeyboardInterrupt


def _use_backend(monkeypatch: pytest.MonkeyPatch, backend: AgentBackend) -> None:
    def build(settings: LoopSettings) -> AgentBackend:
        _ = settings
        return backend

    monkeypatch.setattr(cli_module, "_build_backend", build)


def _prepare_project(runner: CliRunner, project: Path) -> Path:
    assert runner.invoke(cli, ["init"]).exit_code == 0
    assert runner.invoke(cli, ["spec", "auth"]).exit_code == 0
    spec_path = project / "specs" / "auth" / "SPEC.md"
    text = spec_path.read_text(encoding="utf-8")
    spec_path.write_text(
        text.replace("- [ ] Describe the first task", "- [ ] Add model\n- [ ] Add endpoint"),
        encoding="utf-8",
    )
    config_path = project / "cr.toml"
    config_text = config_path.read_text(encoding="utf-8").replace(
        "iteration_delay = 3", "iteration_delay = 0"
    )
    config_path.write_text(config_text, encoding="utf-8")
    return spec_path


def test_init_and_spec_create_project_layout(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MAX_ITERATIONS", "5")
    runner = CliRunner()

    result = runner.invoke(cli, ["init"])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "specs").is_dir()
    assert ContextStore.open(tmp_path / ".cr" / "context.json").count() == 0
    config = tomllib.loads((tmp_path / "cr.toml").read_text(encoding="utf-8"))
    assert config["loop"]["max_iterations"] == 50

    again = runner.invoke(cli, ["init"])
    assert again.exit_code == 0
    assert "Config already present" in again.output

    created = runner.invoke(cli, ["spec", "auth"])
    assert created.exit_code == 0, created.output
    document = SpecDocument.load(tmp_path / "specs" / "auth")
    assert document.name == "auth"
    assert document.counts().pending == 1

    duplicate = runner.invoke(cli, ["spec", "auth"])
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.output

    invalid = runner.invoke(cli, ["spec", "../escape"])
    assert invalid.exit_code == 1


def test_implement_runs_loop_to_completion(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _prepare_project(runner, tmp_path)
    _use_backend(monkeypatch, CheckingBackend())

    result = runner.invoke(cli, ["implement", "specs/auth", "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {
        "status": "complete",
        "iterations": 2,
        "spec": "auth",
        "learnings": 2,
    }

    status = runner.invoke(cli, ["status", "--json"])
    assert status.exit_code == 0
    assert json.loads(status.output) == [
        {
            "name": "auth",
            "status": "complete",
            "directory": "specs/auth",
            "pending": 0,
            "completed": 2,
            "iterations": 2,
        }
    ]

    learnings = runner.invoke(cli, ["learnings", "learning"])
    assert learnings.exit_code == 0
    assert "fixtures live in conftest.py [auth#1]" in learnings.output

    reset = runner.invoke(cli, ["reset-context"])
    assert reset.exit_code == 0
    assert "Cleared 2 context entries." in reset.output
    assert ContextStore.open(tmp_path / ".cr" / "context.json").count() == 0


def test_build_alias_and_max_iterations_exit_code(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CR_MAX_ITERATIONS", "1")
    runner = CliRunner()
    _prepare_project(runner, tmp_path)
    _use_backend(monkeypatch, CheckingBackend(output="done"))

    result = runner.invoke(cli, ["build", "auth"])

    assert result.exit_code == 1
    assert "Status: max_iterations" in result.output
    assert "Iterations: 1" in result.output


def test_interrupt_exits_130_and_leaves_state_resumable(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    spec_path = _prepare_project(runner, tmp_path)
    _use_backend(monkeypatch, InterruptingBackend())

    result = runner.invoke(cli, ["run", "specs/auth"])

    assert result.exit_code == 130
    assert "### In Progress\n- [ ] Add model" in spec_path.read_text(encoding="utf-8")


def test_implement_reports_unusable_spec(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    spec_dir = tmp_path / "specs" / "empty"
    spec_dir.mkdir(parents=True)
    (spec_dir / "SPEC.md").write_text("## Tasks\n", encoding="utf-8")
    _use_backend(monkeypatch, CheckingBackend())

    missing = runner.invoke(cli, ["implement", "specs/nope"])
    assert missing.exit_code == 1
    assert "Spec not found" in missing.output

    empty = runner.invoke(cli, ["implement", "specs/empty"])
    assert empty.exit_code == 1
    assert "no tasks" in empty.output


def test_invalid_environment_value_is_reported(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MAX_RETRIES", "lots")
    runner = CliRunner()

    result = runner.invoke(cli, ["learnings"])

    assert result.exit_code == 1
    assert "MAX_RETRIES must be an integer" in result.output


def test_status_table_without_specs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 0
    assert "No specs found" in result.output
