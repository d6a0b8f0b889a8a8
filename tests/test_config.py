from __future__ import annotations

from pathlib import Path

from splitcrate.config import DEFAULT_INCLUDES, DEFAULT_OUTPUT, Config, load_config


def test_config_defaults() -> None:
    """Test that Config has correct default values."""
    cfg = Config()
    assert cfg.output == DEFAULT_OUTPUT == "splitcrate-output.md"
    assert cfg.style == "markdown"
    assert cfg.include == DEFAULT_INCLUDES
    assert cfg.exclude == []
    assert cfg.respect_gitignore is True
    assert cfg.directory_structure is True
    assert cfg.file_summary is True
    assert cfg.header_text == ""
    assert cfg.split_output_bytes == 0
    assert cfg.split_output_tokens == 0
    assert cfg.token_count_encoding == "o200k_base"
    assert cfg.max_workers == 0
    assert cfg.include_diffs is False
    assert cfg.include_logs is False
    assert cfg.logs_count == 50
    assert cfg.encoding_errors == "replace"


def test_default_includes_are_not_shared() -> None:
    cfg = Config()
    cfg.include.append("extra")
    assert Config().include == DEFAULT_INCLUDES


def test_load_config_missing_file(tmp_path: Path) -> None:
    """Test loading config when file doesn't exist."""
    cfg = load_config(tmp_path)
    assert cfg == Config()


def test_load_config_empty_file(tmp_path: Path) -> None:
    (tmp_path / "splitcrate.toml").write_text("", encoding="utf-8")
    assert load_config(tmp_path) == Config()


def test_load_config_custom_values(tmp_path: Path) -> None:
    """Test loading config with custom values."""
    (tmp_path / "splitcrate.toml").write_text(
        """[splitcrate]
output = "dist/context.xml"
style = "XML"
include = ["src/**/*.py"]
exclude = ["tests/**"]
respect_gitignore = false
directory_structure = false
file_summary = false
header_text = "Generated for review"
split_output_bytes = 500000
split_output_tokens = 120000
token_count_encoding = "cl100k_base"
max_workers = 4
include_diffs = true
include_logs = true
logs_count = 10
encoding_errors = "strict"
""",
        encoding="utf-8",
    )

    cfg = load_config(tmp_path)
    assert cfg.output == "dist/context.xml"
    assert cfg.style == "xml"
    assert cfg.include == ["src/**/*.py"]
    assert cfg.exclude == ["tests/**"]
    assert cfg.respect_gitignore is False
    assert cfg.directory_structure is False
    assert cfg.file_summary is False
    assert cfg.header_text == "Generated for review"
    assert cfg.split_output_bytes == 500000
    assert cfg.split_output_tokens == 120000
    assert cfg.token_count_encoding == "cl100k_base"
    assert cfg.max_workers == 4
    assert cfg.include_diffs is True
    assert cfg.include_logs is True
    assert cfg.logs_count == 10
    assert cfg.encoding_errors == "strict"


def test_load_config_ignores_invalid_values(tmp_path: Path) -> None:
    (tmp_path / "splitcrate.toml").write_text(
        """[splitcrate]
output = "   "
style = "html"
split_output_bytes = true
split_output_tokens = "lots"
encoding_errors = "ignore"
""",
        encoding="utf-8",
    )

    cfg = load_config(tmp_path)
    assert cfg.output == DEFAULT_OUTPUT
    assert cfg.style == "markdown"
    assert cfg.split_output_bytes == 0
    assert cfg.split_output_tokens == 0
    assert cfg.encoding_errors == "replace"


def test_dot_config_takes_precedence(tmp_path: Path) -> None:
    (tmp_path / ".splitcrate.toml").write_text(
        '[splitcrate]\noutput = "dot.md"\n', encoding="utf-8"
    )
    (tmp_path / "splitcrate.toml").write_text(
        '[splitcrate]\noutput = "plain.md"\n', encoding="utf-8"
    )
    (tmp_path / "pyproject.toml").write_text(
        '[tool.splitcrate]\noutput = "pyproject.md"\n', encoding="utf-8"
    )

    assert load_config(tmp_path).output == "dot.md"


def test_load_config_from_pyproject(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text(
        """[project]
name = "demo"

[tool.splitcrate]
split_output_tokens = 8000
""",
        encoding="utf-8",
    )

    cfg = load_config(tmp_path)
    assert cfg.split_output_tokens == 8000


def test_pyproject_without_tool_section_uses_defaults(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text(
        '[project]\nname = "demo"\n', encoding="utf-8"
    )
    assert load_config(tmp_path) == Config()


def test_splitcrate_toml_accepts_tool_table(tmp_path: Path) -> None:
    (tmp_path / "splitcrate.toml").write_text(
        '[tool.splitcrate]\nsplit_output_bytes = 2048\n', encoding="utf-8"
    )
    assert load_config(tmp_path).split_output_bytes == 2048
