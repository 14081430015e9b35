"""Tests for environment-driven configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from mcp_adapters import config


class TestServersDir:
    def test_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(config.ENV_SERVERS_DIR, raising=False)
        assert config.servers_dir() == Path("~/.mcp-adapters/servers").expanduser()

    def test_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv(config.ENV_SERVERS_DIR, str(tmp_path / "s"))
        assert config.servers_dir() == tmp_path / "s"
        assert config.project_dir() == tmp_path


class TestClaudeConfigPath:
    def test_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv(config.ENV_CLAUDE_CONFIG, str(tmp_path / "c.json"))
        assert config.claude_config_path() == tmp_path / "c.json"

    @pytest.mark.parametrize(
        "platform,parts",
        [
            ("darwin", ("Library", "Application Support", "Claude")),
            ("linux", (".config", "Claude")),
        ],
    )
    def test_platform_defaults(self, monkeypatch: pytest.MonkeyPatch, platform: str, parts: tuple[str, ...]) -> None:
        monkeypatch.delenv(config.ENV_CLAUDE_CONFIG, raising=False)
        monkeypatch.setattr(config.sys, "platform", platform)
        assert config.claude_config_path() == Path.home().joinpath(*parts, "claude_desktop_config.json")

    def test_windows_appdata(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv(config.ENV_CLAUDE_CONFIG, raising=False)
        monkeypatch.setattr(config.sys, "platform", "win32")
        monkeypatch.setenv("APPDATA", str(tmp_path))
        assert config.claude_config_path() == tmp_path / "Claude" / "claude_desktop_config.json"


class TestImportPattern:
    def test_matches_default_and_named_imports(self) -> None:
        source = 'import a from "x";\nimport {b, c} from \'y\';\nimport "z";'
        assert config.IMPORT_RE.findall(source) == ["x", "y", "z"]
