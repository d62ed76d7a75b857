"""Tests for vmbuilder.config module."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmbuilder.config import Settings, load_settings, normalize_backend
from vmbuilder.constants import DEFAULT_BASE_DIR, DEFAULT_LIBVIRT_URI, DEFAULT_PORT, DEFAULT_VMRUN_PATH
from vmbuilder.exceptions import ManagerError


class TestDefaults:
    def test_no_file_no_env(self, clean_env):
        settings = load_settings()
        assert settings.port == DEFAULT_PORT
        assert settings.backend == "vmrun"
        assert settings.vmrun_path == DEFAULT_VMRUN_PATH
        assert settings.libvirt_uri == DEFAULT_LIBVIRT_URI
        assert settings.tools_init_timeout == 30
        assert settings.callback_retries == 0
        assert settings.vms_path == DEFAULT_BASE_DIR / "vms"
        assert settings.gold_path == DEFAULT_BASE_DIR / "gold"
        assert settings.images_path == DEFAULT_BASE_DIR / "images"


class TestEnvironment:
    def test_overrides(self, clean_env, mock_env, tmp_path):
        mock_env(
            PORT="8080",
            DATA_DIR=str(tmp_path),
            BACKEND="native",
            TOOLS_INIT_TIMEOUT="45",
            CALLBACK_RETRIES="2",
            VMWARE_VMRUN_PATH="/usr/bin/vmrun",
        )
        settings = load_settings()
        assert settings.port == 8080
        assert settings.backend == "libvirt"
        assert settings.tools_init_timeout == 45
        assert settings.callback_retries == 2
        assert settings.vmrun_path == "/usr/bin/vmrun"
        assert settings.vms_path == tmp_path / "vms"

    @pytest.mark.parametrize(
        "name, value, message",
        [
            ("PORT", "abc", "must be an integer"),
            ("PORT", "70000", "<= 65535"),
            ("TOOLS_INIT_TIMEOUT", "0", ">= 1"),
            ("MAX_WORKERS", "-1", ">= 1"),
            ("BACKEND", "hyperv", "Unsupported BACKEND"),
        ],
    )
    def test_invalid_values(self, clean_env, mock_env, name, value, message):
        mock_env(**{name: value})
        with pytest.raises(ManagerError, match=message):
            load_settings()


class TestConfigFile:
    def test_yaml_values(self, clean_env, tmp_path):
        config = tmp_path / "vm-builder.yaml"
        config.write_text(
            "\n".join(
                [
                    f"data_dir: {tmp_path / 'data'}",
                    "port: 9000",
                    "backend: libvirt",
                    "libvirt_uri: vmwarews:///session",
                    "command_timeout: 60",
                ]
            )
            + "\n"
        )
        settings = load_settings(config)
        assert settings.port == 9000
        assert settings.backend == "libvirt"
        assert settings.libvirt_uri == "vmwarews:///session"
        assert settings.command_timeout == 60
        assert settings.base_path == tmp_path / "data"

    def test_env_wins_over_file(self, clean_env, mock_env, tmp_path):
        config = tmp_path / "vm-builder.yaml"
        config.write_text("port: 9000\n")
        mock_env(PORT="9100")
        assert load_settings(config).port == 9100

    def test_config_file_from_env(self, clean_env, mock_env, tmp_path):
        config = tmp_path / "vm-builder.yaml"
        config.write_text("max_workers: 8\n")
        mock_env(CONFIG_FILE=str(config))
        assert load_settings().max_workers == 8

    def test_empty_file(self, clean_env, tmp_path):
        config = tmp_path / "empty.yaml"
        config.write_text("")
        assert load_settings(config).port == DEFAULT_PORT

    def test_missing_file(self, clean_env, tmp_path):
        with pytest.raises(ManagerError, match="Configuration file missing"):
            load_settings(tmp_path / "nope.yaml")

    def test_unknown_key(self, clean_env, tmp_path):
        config = tmp_path / "bad.yaml"
        config.write_text("colour: blue\n")
        with pytest.raises(ManagerError, match="Unknown settings"):
            load_settings(config)

    def test_not_a_mapping(self, clean_env, tmp_path):
        config = tmp_path / "list.yaml"
        config.write_text("- a\n- b\n")
        with pytest.raises(ManagerError, match="mapping"):
            load_settings(config)

    def test_invalid_yaml(self, clean_env, tmp_path):
        config = tmp_path / "broken.yaml"
        config.write_text("port: [unclosed\n")
        with pytest.raises(ManagerError, match="Invalid YAML"):
            load_settings(config)


class TestSettings:
    def test_from_base_layout(self, tmp_path):
        settings = Settings.from_base(tmp_path, port=1)
        assert settings.port == 1
        assert settings.vms_path == tmp_path / "vms"

    def test_ensure_directories(self, tmp_path):
        settings = Settings.from_base(tmp_path / "base")
        settings.ensure_directories()
        assert all(p.is_dir() for p in (settings.vms_path, settings.gold_path, settings.images_path))

    @pytest.mark.parametrize("raw, expected", [("cli", "vmrun"), ("Fusion", "vmrun"), ("native", "libvirt")])
    def test_backend_aliases(self, raw, expected):
        assert normalize_backend(raw) == expected

    def test_expands_user(self):
        settings = Settings.from_base(Path("~/vmb"))
        assert "~" not in str(settings.base_path)
