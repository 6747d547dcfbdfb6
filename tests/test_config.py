"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from quibble.config import (
    DEFAULT_MAX_ROUNDS,
    ConfigError,
    Settings,
    derive_output_path,
    load_settings,
    resolve_config,
)
from quibble.context import DEFAULT_MAX_FILES


@pytest.fixture
def doc(tmp_path) -> Path:
    (tmp_path / ".git").mkdir()
    path = tmp_path / "design.md"
    path.write_text("# Design\n", encoding="utf-8")
    return path


def _write_settings(root: Path, text: str) -> None:
    (root / ".quibble").mkdir(exist_ok=True)
    (root / ".quibble" / "config.yaml").write_text(text, encoding="utf-8")


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path)
        assert settings == Settings()
        assert settings.max_rounds == DEFAULT_MAX_ROUNDS

    def test_nested_keys(self, tmp_path):
        _write_settings(tmp_path, (
            "max_rounds: 3\n"
            "context:\n"
            "  max_files: 4\n"
            "  max_file_bytes: 1000\n"
            "models:\n"
            "  claude: sonnet\n"
            "  codex: gpt-5-codex\n"
            "timeouts:\n"
            "  inactivity_seconds: 60\n"
        ))
        settings = load_settings(tmp_path)
        assert settings.max_rounds == 3
        assert settings.context_max_files == 4
        assert settings.context_max_file_bytes == 1000
        assert settings.context_max_total_bytes == Settings().context_max_total_bytes
        assert settings.claude_model == "sonnet"
        assert settings.codex_model == "gpt-5-codex"
        assert settings.inactivity_timeout == 60

    def test_empty_file(self, tmp_path):
        _write_settings(tmp_path, "")
        assert load_settings(tmp_path) == Settings()

    def test_invalid_yaml(self, tmp_path):
        _write_settings(tmp_path, "max_rounds: [unclosed\n")
        with pytest.raises(ConfigError, match="Cannot read"):
            load_settings(tmp_path)

    def test_not_a_mapping(self, tmp_path):
        _write_settings(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(tmp_path)

    def test_invalid_value(self, tmp_path):
        _write_settings(tmp_path, "max_rounds: 0\n")
        with pytest.raises(ConfigError, match="Invalid settings"):
            load_settings(tmp_path)


class TestResolveConfig:
    def test_defaults(self, doc):
        config = resolve_config(doc)
        assert config.input_file == str(doc.resolve())
        assert config.output_file == str(doc.resolve().with_name("design-quibbled.md"))
        assert config.max_rounds == DEFAULT_MAX_ROUNDS
        assert config.context_max_files == DEFAULT_MAX_FILES
        assert config.persist is True
        assert config.session_dir == str(doc.resolve().parent / ".quibble")
        assert config.resume_session_id is None

    def test_cli_overrides_settings(self, doc):
        settings = Settings(max_rounds=8, context_max_files=2, claude_model="sonnet")
        config = resolve_config(doc, max_rounds=2, settings=settings)
        assert config.max_rounds == 2
        assert config.context_max_files == 2
        assert config.claude_model == "sonnet"

    def test_settings_file_used(self, doc):
        _write_settings(doc.parent, "max_rounds: 7\n")
        assert resolve_config(doc).max_rounds == 7

    def test_explicit_output(self, doc, tmp_path):
        config = resolve_config(doc, output=tmp_path / "out" / "final.md")
        assert config.output_file == str((tmp_path / "out" / "final.md").resolve())

    def test_no_persist_has_no_session_dir(self, doc):
        config = resolve_config(doc, persist=False)
        assert config.session_dir is None

    def test_session_dir_override(self, doc, tmp_path):
        config = resolve_config(doc, session_dir=tmp_path / "elsewhere")
        assert config.session_dir == str((tmp_path / "elsewhere").resolve())

    def test_resume_requires_persist(self, doc):
        with pytest.raises(ConfigError, match="--resume with --no-persist"):
            resolve_config(doc, resume="design-20260101-000000-abcdef", persist=False)

    @pytest.mark.parametrize(
        "option", ["max_rounds", "context_max_files", "context_max_file_bytes", "context_max_total_bytes"],
    )
    def test_non_positive_rejected(self, doc, option):
        with pytest.raises(ConfigError, match="positive integer"):
            resolve_config(doc, **{option: 0})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            resolve_config(tmp_path / "missing.md")

    def test_directory(self, tmp_path):
        with pytest.raises(ConfigError, match="not a file"):
            resolve_config(tmp_path)

    def test_too_large(self, tmp_path):
        big = tmp_path / "big.md"
        big.write_bytes(b"a" * (1024 * 1024 + 1))
        with pytest.raises(ConfigError, match="too large"):
            resolve_config(big)

    def test_not_utf8(self, tmp_path):
        bad = tmp_path / "bad.md"
        bad.write_bytes(b"\xff\xfe\xfa")
        with pytest.raises(ConfigError, match="UTF-8"):
            resolve_config(bad)

    def test_binary(self, tmp_path):
        binary = tmp_path / "bin.md"
        binary.write_bytes(b"abc\x00def")
        with pytest.raises(ConfigError, match="binary"):
            resolve_config(binary)


def test_derive_output_path():
    assert derive_output_path(Path("/a/b/plan.md")) == Path("/a/b/plan-quibbled.md")
    assert derive_output_path(Path("/a/NOTES")) == Path("/a/NOTES-quibbled")
