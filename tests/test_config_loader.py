"""
Unit tests for configuration loading.
"""

import pytest

from usage_aggregator.config_loader import ConfigLoader, lookup, merge_config


class TestConfigLoader:
    """Test YAML loading with environment expansion."""

    def test_env_expansion_and_defaults(self, tmp_path, monkeypatch):
        """${VAR} and ${VAR:-default} expand; missing keys fall back to defaults."""
        monkeypatch.setenv("TEST_PG_HOST", "db.internal")
        monkeypatch.delenv("TEST_PG_PORT", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            "postgresql:\n"
            "  host: ${TEST_PG_HOST}\n"
            "  port: ${TEST_PG_PORT:-6543}\n"
            "retention:\n"
            "  daily_to_weekly_days: 14\n"
        )

        loader = ConfigLoader(str(path))
        config = loader.load()

        assert config["postgresql"]["host"] == "db.internal"
        assert config["postgresql"]["port"] == "6543"
        assert config["postgresql"]["schema"] == "public"
        assert loader.get("retention.daily_to_weekly_days") == 14
        assert loader.get("retention.weekly_to_biweekly_days") == 90
        assert loader.get("retention.schedule_cron") == "0 2 * * 1"

    def test_missing_required_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_REQUIRED_SECRET", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("postgresql:\n  password: ${TEST_REQUIRED_SECRET}\n")

        with pytest.raises(ValueError, match="TEST_REQUIRED_SECRET"):
            ConfigLoader(str(path)).load()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader(str(tmp_path / "nope.yaml")).load()

    def test_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("logging:\n  level: WARNING\n")
        monkeypatch.setenv("USAGE_AGGREGATOR_CONFIG", str(path))

        assert ConfigLoader().get("logging.level") == "WARNING"


class TestLookup:
    """Test dot-path helpers."""

    def test_lookup(self):
        config = {"a": {"b": {"c": 1}}}
        assert lookup(config, "a.b.c") == 1
        assert lookup(config, "a.x", "default") == "default"
        assert lookup(config, "a.b.c.d") is None

    def test_merge_does_not_mutate(self):
        base = {"a": {"b": 1, "c": 2}}
        merged = merge_config(base, {"a": {"b": 5}})
        assert merged == {"a": {"b": 5, "c": 2}}
        assert base == {"a": {"b": 1, "c": 2}}
