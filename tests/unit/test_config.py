"""Unit tests for settings loading and the package version."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

import petrel
from petrel.config import Settings, get_settings


@pytest.fixture
def fresh_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Clear the settings cache and keep stray config.yaml files out of reach."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PETREL_CONFIG_FILE", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.server.port == 8000
        assert settings.launcher.type == "solo5"
        assert settings.launcher.solo5.tender == "solo5-hvt"
        assert settings.quota.default_policy.max_workloads == 2
        assert settings.security.allow_anonymous is True

    def test_yaml_file(self, fresh_settings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        config_file = tmp_path / "petrel.yaml"
        config_file.write_text(
            "server:\n"
            "  port: 9100\n"
            "quota:\n"
            "  default_policy:\n"
            "    max_workloads: 7\n"
            "    allowed_bridges: [service, br1]\n"
        )
        monkeypatch.setenv("PETREL_CONFIG_FILE", str(config_file))

        settings = get_settings()

        assert settings.server.port == 9100
        assert settings.quota.default_policy.max_workloads == 7
        assert settings.quota.default_policy.allowed_bridges == ["service", "br1"]
        assert settings.server.host == "0.0.0.0"

    def test_environment_overrides_file(
        self, fresh_settings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        config_file = tmp_path / "petrel.yaml"
        config_file.write_text("server:\n  port: 9100\n")
        monkeypatch.setenv("PETREL_CONFIG_FILE", str(config_file))
        monkeypatch.setenv("PETREL_SERVER__PORT", "9200")

        assert get_settings().server.port == 9200

    def test_missing_file_falls_back_to_defaults(self, fresh_settings):
        assert get_settings().server.port == 8000

    def test_settings_are_cached(self, fresh_settings):
        assert get_settings() is get_settings()


class TestVersion:
    def test_version_matches_pyproject(self):
        pyproject = Path(__file__).parent.parent.parent / "pyproject.toml"
        with open(pyproject, "rb") as f:
            data = tomllib.load(f)

        assert petrel.__version__ == data["project"]["version"]
