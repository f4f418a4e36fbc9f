from __future__ import annotations

import asyncio
import json
import logging
import re
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from compound_loop import __version__
from compound_loop.backends import AgentBackend, ClaudeCodeBackend, CodexBackend
from compound_loop.config import (
    CONFIG_FILENAME,
    CONTEXT_FILENAME,
    SPECS_DIRNAME,
    STATE_DIRNAME,
    ConfigError,
    LoopSettings,
    load_config,
    save_config,
)
from compound_loop.loop import IterationLoop, LoopError
from compound_loop.reporting import (
    render_iteration_summary,
    render_status_table,
    status_summary,
)
from compound_loop.state import CATEGORIES, ContextStore, SpecDocument, StateError
from compound_loop.state.spec_document import SPEC_FILENAME

logger = logging.getLogger(__name__)

INTERRUPTED_EXIT_CODE = 130
SPEC_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    context_path: Path
    settings: LoopSettings


def _load_runtime(project_root: Path) -> Runtime:
    config_path = project_root / CONFIG_FILENAME
    try:
        settings = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        context_path=project_root / STATE_DIRNAME / CONTEXT_FILENAME,
        settings=settings,
    )


def _record_backend_event(event: dict[str, Any]) -> None:
    logger.debug("backend event %s", event)


def _build_backend(settings: LoopSettings) -> AgentBackend:
    agent = settings.agent
    backend_cls = CodexBackend if agent.name == "codex" else ClaudeCodeBackend
    return backend_cls(
        agent.binary or None,
        model=agent.model,
        extra_args=agent.extra_args,
        event_hook=_record_backend_event,
    )


def _resolve_spec_dir(project_root: Path, value: str) -> Path:
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = project_root / candidate
    if candidate.exists():
        return candidate.resolve()
    by_name = project_root / SPECS_DIRNAME / value
    if by_name.exists():
        return by_name.resolve()
    raise click.ClickException(f"Spec not found: {value}")


def _raise_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


@click.group()
@click.version_option(__version__, prog_name="cr")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Run a bounded, resumable build loop over spec documents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
def init_command() -> None:
    project_root = Path.cwd().resolve()
    config_path = project_root / CONFIG_FILENAME
    if config_path.exists():
        click.echo(f"Config already present: {config_path}")
    else:
        save_config(config_path, LoopSettings.default())
        click.echo(f"Wrote {config_path}")

    (project_root / SPECS_DIRNAME).mkdir(parents=True, exist_ok=True)
    context_path = project_root / STATE_DIRNAME / CONTEXT_FILENAME
    if not context_path.exists():
        try:
            ContextStore(context_path).save()
        except StateError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"Initialized compound loop in {project_root}")


@cli.command("spec")
@click.argument("name")
def spec_command(name: str) -> None:
    if not SPEC_NAME_PATTERN.match(name):
        raise click.ClickException(
            f"Invalid spec name {name!r}; use letters, digits, '.', '_' or '-'."
        )
    project_root = Path.cwd().resolve()
    directory = project_root / SPECS_DIRNAME / name
    if (directory / SPEC_FILENAME).exists():
        raise click.ClickException(f"Spec already exists: {directory / SPEC_FILENAME}")
    document = SpecDocument.create(directory, name)
    try:
        document.save()
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created {document.path}")


@cli.command("implement")
@click.argument("spec_dir")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the summary as JSON.")
@click.pass_context
def implement_command(ctx: click.Context, spec_dir: str, as_json: bool) -> None:
    """Work through SPEC_DIR one task per iteration until done or stopped."""
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root)
    spec_path = _resolve_spec_dir(project_root, spec_dir)
    loop = IterationLoop(
        spec_path,
        project_root=project_root,
        backend=_build_backend(runtime.settings),
        settings=runtime.settings,
        context_path=runtime.context_path,
    )

    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        summary = asyncio.run(loop.run())
    except KeyboardInterrupt:
        click.echo("Interrupted. Run the same command again to resume.", err=True)
        ctx.exit(INTERRUPTED_EXIT_CODE)
    except (LoopError, StateError, ConfigError) as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if as_json:
        click.echo(json.dumps(summary.to_dict(), ensure_ascii=False))
    else:
        click.echo(render_iteration_summary(summary))
    ctx.exit(summary.exit_code)


cli.add_command(implement_command, "build")
cli.add_command(implement_command, "run")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
def status_command(as_json: bool) -> None:
    summaries = status_summary(Path.cwd().resolve())
    if as_json:
        click.echo(json.dumps([item.to_dict() for item in summaries], ensure_ascii=False, indent=2))
        return
    click.echo(render_status_table(summaries))


@cli.command("learnings")
@click.argument("category", required=False, type=click.Choice(list(CATEGORIES)))
def learnings_command(category: str | None) -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    store = ContextStore.open(runtime.context_path, limits=runtime.settings.context.limits)
    click.echo(store.render([category] if category else None))


@cli.command("reset-context")
def reset_context_command() -> None:
    runtime = _load_runtime(Path.cwd().resolve())
    store = ContextStore.open(runtime.context_path, limits=runtime.settings.context.limits)
    removed = store.count()
    store.reset()
    try:
        store.save()
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cleared {removed} context entries.")
