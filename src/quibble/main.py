"""CLI entrypoint for quibble."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import tempfile
from pathlib import Path
from typing import Optional

import typer

from quibble.config import ConfigError, QuibbleConfig, resolve_config
from quibble.display import Display
from quibble.events import EventEmitter
from quibble.models import SessionStatus, _utcnow
from quibble.orchestrator import Orchestrator
from quibble.session_manager import SessionManager
from quibble.storage import IN_MEMORY_PATH, StorageError, create_storage
from quibble.trigger.base import AuthorEngine, ReviewerEngine
from quibble.trigger.cc import ClaudeCodeTrigger
from quibble.trigger.codex import CodexTrigger

logger = logging.getLogger(__name__)

app = typer.Typer(name="quibble", help="Adversarial AI document review", add_completion=False)

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stderr,
        force=True,
    )


def open_session(config: QuibbleConfig) -> SessionManager:
    """Create a new session, or load and validate the one being resumed."""
    storage = create_storage(
        config.persist, config.session_dir, config.input_file, config.resume_session_id,
    )
    session = SessionManager(storage, config.input_file, config.output_file, config.max_rounds)

    if not config.resume_session_id:
        session.initialize()
        return session

    if not session.load_existing():
        raise ConfigError(f"Session not found: {config.resume_session_id}")
    manifest = session.manifest
    if Path(manifest.input_file).resolve() != Path(config.input_file).resolve():
        raise ConfigError(
            f"Session {manifest.session_id} was created for {manifest.input_file}, not {config.input_file}"
        )
    # The round limit and output path are fixed when the session is created.
    if manifest.max_rounds != config.max_rounds or manifest.output_file != config.output_file:
        logger.warning(
            "Resuming %s with its original settings: max_rounds=%d, output=%s",
            manifest.session_id, manifest.max_rounds, manifest.output_file,
        )
    if manifest.status == SessionStatus.FAILED:
        session.reopen()
    elif manifest.status != SessionStatus.IN_PROGRESS:
        raise ConfigError(f"Session {manifest.session_id} already finished ({manifest.status.value})")
    return session


def prepare_debug_dir(config: QuibbleConfig, session: SessionManager) -> Path | None:
    if not (config.debug_claude or config.debug_codex):
        return None
    if session.session_path == IN_MEMORY_PATH:
        debug_dir = Path(tempfile.gettempdir()) / f"quibble-debug-{session.session_id}"
    else:
        debug_dir = Path(session.session_path) / "debug"
    debug_dir.mkdir(parents=True, exist_ok=True)
    return debug_dir


async def execute(
    config: QuibbleConfig,
    *,
    reviewer: ReviewerEngine | None = None,
    author: AuthorEngine | None = None,
) -> int:
    """Run one review session and return the process exit code."""
    display = Display(json_mode=config.json_output)
    events = EventEmitter()
    events.subscribe(display.handle_event)

    session = open_session(config)
    debug_dir = prepare_debug_dir(config, session)

    cwd = Path(config.input_file).parent
    reviewer = reviewer or CodexTrigger(
        config.codex_model, inactivity_timeout=config.inactivity_timeout, cwd=cwd,
    )
    author = author or ClaudeCodeTrigger(
        config.claude_model, inactivity_timeout=config.inactivity_timeout, cwd=cwd,
    )
    orchestrator = Orchestrator(
        config, session, events, reviewer, author,
        debug_dir=debug_dir, keep_debug=config.keep_debug,
    )
    try:
        result = await orchestrator.run()
    finally:
        await reviewer.close()
        await author.close()
    return result.exit_code


def _report_init_error(message: str, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps({
            "type": "error",
            "code": "INIT_ERROR",
            "message": message,
            "phase": "initialization",
            "round": None,
            "recoverable": False,
            "timestamp": _utcnow().isoformat(),
        }))
    else:
        typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)


@app.command()
def main(
    file: Path = typer.Argument(..., help="Markdown document to review"),
    max_rounds: Optional[int] = typer.Option(None, "--max-rounds", help="Maximum review rounds [default: 5]"),
    output: Optional[Path] = typer.Option(None, "--output", help="Output path for the final document"),
    context_max_files: Optional[int] = typer.Option(None, help="Max auto-included context files"),
    context_max_file_bytes: Optional[int] = typer.Option(None, help="Max bytes per context file"),
    context_max_total_bytes: Optional[int] = typer.Option(None, help="Max total bytes of context"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the resolved configuration and exit"),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON lines for automation"),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Store the session on disk"),
    debug_claude: bool = typer.Option(False, "--debug-claude", help="Log raw Claude stream lines"),
    debug_codex: bool = typer.Option(False, "--debug-codex", help="Log raw Codex stream lines"),
    keep_debug: bool = typer.Option(False, "--keep-debug", help="Keep debug logs after a successful run"),
    resume: Optional[str] = typer.Option(None, "--resume", help="Resume a previous session by ID"),
    session_dir: Optional[Path] = typer.Option(None, "--session-dir", help="Override session storage location"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
) -> None:
    """Review FILE with Codex, let Claude revise it, repeat until they agree."""
    configure_logging(verbose)
    try:
        config = resolve_config(
            file,
            max_rounds=max_rounds,
            output=output,
            context_max_files=context_max_files,
            context_max_file_bytes=context_max_file_bytes,
            context_max_total_bytes=context_max_total_bytes,
            dry_run=dry_run,
            json_output=json_output,
            persist=persist,
            debug_claude=debug_claude,
            debug_codex=debug_codex,
            keep_debug=keep_debug,
            resume=resume,
            session_dir=session_dir,
        )
        if config.dry_run:
            typer.echo("Dry run mode - would execute with config:")
            typer.echo(config.model_dump_json(indent=2))
            raise typer.Exit(0)
        exit_code = asyncio.run(execute(config))
    except (ConfigError, StorageError) as e:
        _report_init_error(str(e), json_output)
        raise typer.Exit(1) from e
    raise typer.Exit(exit_code)


if __name__ == "__main__":
    app()
