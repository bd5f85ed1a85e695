"""Tests for exporter.config -- configuration validation."""

from pathlib import Path
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

from exporter.config import ExporterConfig, get_config
from exporter.exceptions import ConfigurationError


def _cfg(**overrides):
    """Create an ExporterConfig without reading config.env file."""
    defaults = {
        "table_service_base_url": "https://tables.example.com",
        "table_service_api_key": "key",
        "exporter_principal_id": "principal",
    }
    return ExporterConfig(**{**defaults, **overrides}, _env_file=None)


class TestDefaults:
    def test_defaults(self):
        cfg = _cfg()
        assert cfg.registry_table_prefix == "exporter_"
        assert cfg.staging_dir == Path("tmp/exporter")
        assert cfg.worker_count == 4
        assert cfg.record_loop_progress_report_period == 250
        assert cfg.study_project_map == {}
        assert cfg.azure_sql_server is None

    def test_time_zone(self):
        assert _cfg().time_zone == ZoneInfo("America/Los_Angeles")


class TestUrlValidation:
    def test_trailing_slash_stripped(self):
        assert _cfg(table_service_base_url="http://localhost:8000/").table_service_base_url == "http://localhost:8000"

    def test_invalid_url_rejected(self):
        with pytest.raises(Exception, match="must start with http"):
            _cfg(table_service_base_url="ftp://tables.example.com")


class TestFieldValidation:
    def test_log_level_uppercased(self):
        assert _cfg(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level_rejected(self):
        with pytest.raises(Exception, match="LOG_LEVEL"):
            _cfg(log_level="TRACE")

    def test_unknown_time_zone_rejected(self):
        with pytest.raises(Exception, match="TIME_ZONE_NAME"):
            _cfg(time_zone_name="Mars/Olympus_Mons")

    def test_registry_prefix_rejected(self):
        with pytest.raises(Exception, match="REGISTRY_TABLE_PREFIX"):
            _cfg(registry_table_prefix="bad prefix;")

    def test_worker_count_bounds(self):
        with pytest.raises(Exception):
            _cfg(worker_count=0)
        with pytest.raises(Exception):
            _cfg(worker_count=65)

    def test_study_maps_from_env(self, monkeypatch):
        monkeypatch.setenv("STUDY_PROJECT_MAP", '{"study-a": "project-a"}')
        assert _cfg().study_project_map == {"study-a": "project-a"}


class TestAzureConfigValidation:
    def test_both_set(self):
        assert _cfg(storage_account="acct", container="c").adls_enabled is True

    def test_neither_set(self):
        assert _cfg().adls_enabled is False

    def test_only_account_rejected(self):
        with pytest.raises(Exception, match="STORAGE_ACCOUNT and CONTAINER"):
            _cfg(storage_account="acct")


class TestGetConfig:
    def test_missing_required_fields(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        for name in ("TABLE_SERVICE_BASE_URL", "TABLE_SERVICE_API_KEY", "EXPORTER_PRINCIPAL_ID"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ConfigurationError, match="Failed to load configuration"):
            get_config()

    def test_loads_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TABLE_SERVICE_BASE_URL", "https://tables.example.com/")
        monkeypatch.setenv("TABLE_SERVICE_API_KEY", "k")
        monkeypatch.setenv("EXPORTER_PRINCIPAL_ID", "p")
        with patch("exporter.config.load_dotenv"):
            cfg = get_config()
        assert cfg.table_service_base_url == "https://tables.example.com"
