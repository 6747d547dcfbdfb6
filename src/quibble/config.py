"""Run configuration: CLI options layered over ``.quibble/config.yaml``."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from quibble.context import (
    DEFAULT_MAX_FILE_BYTES,
    DEFAULT_MAX_FILES,
    DEFAULT_MAX_TOTAL_BYTES,
    find_git_root,
)
from quibble.trigger.base import DEFAULT_INACTIVITY_TIMEOUT

logger = logging.getLogger(__name__)

CONFIG_DIR = ".quibble"
CONFIG_FILE = "config.yaml"
MAX_INPUT_BYTES = 1024 * 1024
DEFAULT_MAX_ROUNDS = 5


class ConfigError(Exception):
    """Invalid input file, option combination or config file."""


class Settings(BaseModel):
    """Values from ``.quibble/config.yaml``; CLI flags override them."""

    max_rounds: int = Field(default=DEFAULT_MAX_ROUNDS, ge=1)
    context_max_files: int = Field(default=DEFAULT_MAX_FILES, ge=1)
    context_max_file_bytes: int = Field(default=DEFAULT_MAX_FILE_BYTES, ge=1)
    context_max_total_bytes: int = Field(default=DEFAULT_MAX_TOTAL_BYTES, ge=1)
    claude_model: str | None = None
    codex_model: str | None = None
    inactivity_timeout: float = Field(default=DEFAULT_INACTIVITY_TIMEOUT, gt=0)


class QuibbleConfig(BaseModel):
    input_file: str
    output_file: str
    max_rounds: int = DEFAULT_MAX_ROUNDS
    context_max_files: int = DEFAULT_MAX_FILES
    context_max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    context_max_total_bytes: int = DEFAULT_MAX_TOTAL_BYTES
    dry_run: bool = False
    json_output: bool = False
    persist: bool = True
    debug_claude: bool = False
    debug_codex: bool = False
    keep_debug: bool = False
    resume_session_id: str | None = None
    session_dir: str | None = None
    claude_model: str | None = None
    codex_model: str | None = None
    inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT


def project_root(input_file: str | Path) -> Path:
    """Git root of the input file, else the directory it lives in."""
    base = Path(input_file).resolve().parent
    return find_git_root(base) or base


def load_settings(base_dir: str | Path) -> Settings:
    """Load settings from ``<base_dir>/.quibble/config.yaml`` if present."""
    config_file = Path(base_dir) / CONFIG_DIR / CONFIG_FILE
    if not config_file.exists():
        return Settings()

    try:
        raw = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {config_file}: {e}") from e
    if not raw:
        return Settings()
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_file} must contain a mapping")

    context = raw.get("context") or {}
    models = raw.get("models") or {}
    timeouts = raw.get("timeouts") or {}
    values = {
        "max_rounds": raw.get("max_rounds"),
        "context_max_files": context.get("max_files"),
        "context_max_file_bytes": context.get("max_file_bytes"),
        "context_max_total_bytes": context.get("max_total_bytes"),
        "claude_model": models.get("claude"),
        "codex_model": models.get("codex"),
        "inactivity_timeout": timeouts.get("inactivity_seconds"),
    }
    try:
        settings = Settings(**{k: v for k, v in values.items() if v is not None})
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {config_file}: {e}") from e
    logger.debug("Loaded settings from %s", config_file)
    return settings


def _validate_input(path: Path, display_name: str) -> None:
    if not path.exists():
        raise ConfigError(f"Input file not found: {display_name}")
    if not path.is_file():
        raise ConfigError(f"Input path is not a file: {display_name}")
    size = path.stat().st_size
    if size > MAX_INPUT_BYTES:
        raise ConfigError(f"Input file too large: {size} bytes (max {MAX_INPUT_BYTES})")
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read input file as UTF-8: {display_name}") from e
    if "\0" in content:
        raise ConfigError("Input file appears to be binary")


def _positive(value: int | None, flag: str) -> int | None:
    if value is not None and value < 1:
        raise ConfigError(f"{flag} must be a positive integer")
    return value


def derive_output_path(input_file: Path) -> Path:
    return input_file.with_name(f"{input_file.stem}-quibbled{input_file.suffix}")


def resolve_config(
    input_file: str | Path,
    *,
    max_rounds: int | None = None,
    output: str | Path | None = None,
    context_max_files: int | None = None,
    context_max_file_bytes: int | None = None,
    context_max_total_bytes: int | None = None,
    dry_run: bool = False,
    json_output: bool = False,
    persist: bool = True,
    debug_claude: bool = False,
    debug_codex: bool = False,
    keep_debug: bool = False,
    resume: str | None = None,
    session_dir: str | Path | None = None,
    settings: Settings | None = None,
) -> QuibbleConfig:
    """Validate options and build the run configuration.

    Runs before any session exists, so a bad invocation never leaves state
    behind.
    """
    path = Path(input_file).resolve()
    _validate_input(path, str(input_file))

    if resume and not persist:
        raise ConfigError("Cannot use --resume with --no-persist")

    _positive(max_rounds, "--max-rounds")
    _positive(context_max_files, "--context-max-files")
    _positive(context_max_file_bytes, "--context-max-file-bytes")
    _positive(context_max_total_bytes, "--context-max-total-bytes")

    root = project_root(path)
    if settings is None:
        settings = load_settings(root)

    resolved_session_dir: str | None = None
    if persist:
        resolved_session_dir = str(Path(session_dir).resolve() if session_dir else root / CONFIG_DIR)

    return QuibbleConfig(
        input_file=str(path),
        output_file=str(Path(output).resolve() if output else derive_output_path(path)),
        max_rounds=max_rounds or settings.max_rounds,
        context_max_files=context_max_files or settings.context_max_files,
        context_max_file_bytes=context_max_file_bytes or settings.context_max_file_bytes,
        context_max_total_bytes=context_max_total_bytes or settings.context_max_total_bytes,
        dry_run=dry_run,
        json_output=json_output,
        persist=persist,
        debug_claude=debug_claude,
        debug_codex=debug_codex,
        keep_debug=keep_debug,
        resume_session_id=resume,
        session_dir=resolved_session_dir,
        claude_model=settings.claude_model,
        codex_model=settings.codex_model,
        inactivity_timeout=settings.inactivity_timeout,
    )
