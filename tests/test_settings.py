"""Tests for ClientSettings layering and the language server table."""

import json

import pytest

from tomos.constants import DEFAULT_HEALTH_CHECK_INTERVAL, DEFAULT_HEARTBEAT_TIMEOUT
from tomos.lsp.ls_config import DEFAULT_LANGUAGE_SERVERS, LanguageServerConfig, default_language_servers
from tomos.lsp.settings import ClientSettings
from tomos.types.errors import ConfigurationError


def write_config(root, data):
    config_dir = root / ".tomos"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "config.json").write_text(json.dumps(data))


class TestDefaults:
    """Tests for built-in defaults."""

    def test_supervision_defaults(self):
        settings = ClientSettings()
        assert settings.heartbeat_timeout == DEFAULT_HEARTBEAT_TIMEOUT == 120.0
        assert settings.health_check_interval == DEFAULT_HEALTH_CHECK_INTERVAL == 30.0
        assert settings.restart_backoff == 2.0

    def test_default_servers_are_copies(self):
        servers = default_language_servers()
        servers["python"].args.append("--extra")
        assert "--extra" not in DEFAULT_LANGUAGE_SERVERS["python"].args

    @pytest.mark.parametrize(
        "filename,language",
        [("a.py", "python"), ("src/b.ts", "typescript"), ("c.jsx", "javascript"), ("main.go", "go"), ("x.txt", None)],
    )
    def test_language_for_filename(self, filename, language):
        assert ClientSettings().language_for_filename(filename) == language


class TestLoad:
    """Tests for ClientSettings.load() layering."""

    def test_without_config_file(self, tmp_path):
        settings = ClientSettings.load(str(tmp_path), environ={})
        assert settings.request_timeout == 30.0
        assert "python" in settings.servers

    def test_config_file_overrides(self, tmp_path):
        write_config(
            tmp_path,
            {
                "settings": {"request_timeout": 5, "trace_lsp_communication": True},
                "servers": {
                    "python": {"command": "pylsp", "extensions": ["py"]},
                    "java": None,
                },
            },
        )
        settings = ClientSettings.load(str(tmp_path), environ={})
        assert settings.request_timeout == 5.0
        assert settings.trace_lsp_communication is True
        assert settings.servers["python"].command == "pylsp"
        assert settings.servers["python"].extensions == [".py"]
        assert "java" not in settings.servers

    def test_environment_wins(self, tmp_path):
        write_config(tmp_path, {"settings": {"request_timeout": 5}})
        settings = ClientSettings.load(
            str(tmp_path),
            environ={"TOMOS_REQUEST_TIMEOUT": "7.5", "TOMOS_TRACE_LSP_COMMUNICATION": "yes"},
        )
        assert settings.request_timeout == 7.5
        assert settings.trace_lsp_communication is True

    def test_invalid_json(self, tmp_path):
        (tmp_path / ".tomos").mkdir()
        (tmp_path / ".tomos" / "config.json").write_text("{not json")
        with pytest.raises(ConfigurationError, match="Could not read"):
            ClientSettings.load(str(tmp_path), environ={})

    def test_invalid_value(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ClientSettings.load(str(tmp_path), environ={"TOMOS_REQUEST_TIMEOUT": "soon"})

    def test_non_positive_timeout(self):
        with pytest.raises(ConfigurationError, match="request_timeout"):
            ClientSettings(request_timeout=0)

    def test_unknown_setting_ignored(self, tmp_path):
        write_config(tmp_path, {"settings": {"colour": "blue"}})
        assert ClientSettings.load(str(tmp_path), environ={}).request_timeout == 30.0


class TestLanguageServerConfig:
    """Tests for LanguageServerConfig validation."""

    def test_language_id_defaults_to_language(self):
        assert LanguageServerConfig("python", "pyright-langserver").language_id == "python"

    def test_missing_command(self):
        with pytest.raises(ConfigurationError):
            LanguageServerConfig.from_dict("python", {"args": []})

    def test_args_must_be_strings(self):
        with pytest.raises(ConfigurationError):
            LanguageServerConfig("python", "pyright", args=["--stdio", 3])

    def test_round_trip_dict(self):
        config = LanguageServerConfig("go", "gopls", args=["serve"], extensions=[".go"])
        assert LanguageServerConfig.from_dict("go", config.to_dict()) == config
