"""Tests for configuration schema, loading and display."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from errorferry.core.config import (
    CircuitBreakerSettings,
    CompressionSettings,
    ReporterSettings,
    SecuritySettings,
    StoreSettings,
    load_settings,
    resolve_config,
)

MINIMAL_YAML = """
endpoint_url: "https://collector.example.com/webhook/abc123"
project: "billing"
"""


class TestDefaults:
    """Defaults follow the documented units: seconds, bytes, ratios."""

    def test_reporter_defaults(self) -> None:
        settings = ReporterSettings(endpoint_url="https://collector.example.com/x", project="billing")

        assert settings.enabled is True
        assert settings.environment == "production"
        assert settings.max_breadcrumbs == 20
        assert settings.quota.daily_limit == 1000
        assert settings.quota.monthly_limit == 10000
        assert settings.rate_limit.requests_per_minute == 100
        assert settings.rate_limit.duplicate_window_seconds == 300.0
        assert settings.retry.max_retries == 3
        assert settings.batch.enabled is False
        assert settings.offline.max_queue_size == 50
        assert settings.store.backend == "memory"

    def test_settings_are_frozen(self) -> None:
        settings = ReporterSettings(endpoint_url="https://collector.example.com/x", project="billing")

        with pytest.raises(ValidationError):
            settings.project = "other"  # type: ignore[misc]


class TestValidation:
    def test_project_required(self) -> None:
        with pytest.raises(ValidationError):
            ReporterSettings(endpoint_url="https://collector.example.com/x", project="")

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_failure_threshold_is_a_ratio(self, threshold: float) -> None:
        with pytest.raises(ValidationError):
            CircuitBreakerSettings(failure_threshold=threshold)

    @pytest.mark.parametrize(("given", "expected"), [(0, 1), (6, 6), (42, 9)])
    def test_compression_level_clamped(self, given: int, expected: int) -> None:
        assert CompressionSettings(level=given).level == expected

    def test_invalid_sensitive_pattern_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Invalid sensitive pattern"):
            SecuritySettings(extra_sensitive_patterns=("([unclosed",))

    def test_database_backend_requires_url(self) -> None:
        with pytest.raises(ValidationError, match="store.url is required"):
            StoreSettings(backend="database")


class TestLoadSettings:
    """load_settings: YAML through Dynaconf, then pydantic."""

    def test_load_minimal(self, tmp_path: Path) -> None:
        config_file = tmp_path / "errorferry.yaml"
        config_file.write_text(MINIMAL_YAML)

        settings = load_settings(config_file)

        assert settings.project == "billing"
        assert settings.endpoint_url == "https://collector.example.com/webhook/abc123"

    def test_load_nested_sections(self, tmp_path: Path) -> None:
        config_file = tmp_path / "errorferry.yaml"
        config_file.write_text(
            MINIMAL_YAML
            + """
quota:
  daily_limit: 50
batch:
  enabled: true
  max_size: 25
"""
        )

        settings = load_settings(config_file)

        assert settings.quota.daily_limit == 50
        assert settings.batch.enabled is True
        assert settings.batch.max_size == 25

    def test_load_with_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "errorferry.yaml"
        config_file.write_text(
            MINIMAL_YAML
            + """
quota:
  daily_limit: 50
"""
        )
        monkeypatch.setenv("ERRORFERRY_QUOTA__DAILY_LIMIT", "5")

        settings = load_settings(config_file)

        assert settings.quota.daily_limit == 5

    def test_env_var_expansion_in_values(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "errorferry.yaml"
        config_file.write_text(
            """
endpoint_url: "https://collector.example.com/webhook/${COLLECTOR_TOKEN}"
project: "${COLLECTOR_PROJECT:-fallback}"
"""
        )
        monkeypatch.setenv("COLLECTOR_TOKEN", "tok123")
        monkeypatch.delenv("COLLECTOR_PROJECT", raising=False)

        settings = load_settings(config_file)

        assert settings.endpoint_url.endswith("/tok123")
        assert settings.project == "fallback"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "nope.yaml")

    def test_invalid_values_raise_validation_error(self, tmp_path: Path) -> None:
        config_file = tmp_path / "errorferry.yaml"
        config_file.write_text(
            MINIMAL_YAML
            + """
offline:
  max_queue_size: -1
"""
        )

        with pytest.raises(ValidationError):
            load_settings(config_file)


class TestResolveConfig:
    def test_endpoint_path_is_hidden(self) -> None:
        settings = ReporterSettings(endpoint_url="https://collector.example.com/webhook/secret-token", project="billing")

        resolved = resolve_config(settings)

        assert resolved["endpoint_url"] == "https://collector.example.com/..."
        assert "secret-token" not in str(resolved)

    def test_is_json_compatible(self) -> None:
        settings = ReporterSettings(endpoint_url="https://collector.example.com/x", project="billing")

        resolved = resolve_config(settings)

        # frozenset fields are dumped as lists in json mode
        assert isinstance(resolved["security"]["require_https_environments"], list)
