"""
Tests for settings defaults, validation and environment overrides.
"""

import pytest
from pydantic import ValidationError

from deepex.config.settings import (
    ObservabilityConfig,
    PipelineConfig,
    ProviderConfig,
    ResilienceConfig,
    Settings,
    get_settings,
)


class TestDefaults:
    """Out-of-the-box configuration."""

    def test_pipeline_defaults(self):
        """Test budget, threshold and chunking defaults."""
        pipeline = PipelineConfig()

        assert pipeline.time_budget == 120.0
        assert pipeline.synth_time_budget == 50.0
        assert pipeline.escalation_threshold == 70
        assert pipeline.deep_chunk_size == 10
        assert pipeline.ultra_chunk_size == 1000

    def test_resilience_defaults(self):
        """Test retry defaults match the documented schedule."""
        resilience = ResilienceConfig()

        assert resilience.max_attempts == 5
        assert resilience.backoff_schedule == [1.0, 2.0, 4.0, 8.0, 12.0]

    def test_get_settings_is_cached(self):
        """Test get_settings returns one shared instance."""
        assert get_settings() is get_settings()


class TestValidation:
    """Field validation."""

    def test_base_url_scheme_and_trailing_slash(self):
        """Test base URLs need a scheme and lose trailing slashes."""
        assert ProviderConfig(base_url="https://llm.example/v1/").base_url == "https://llm.example/v1"
        with pytest.raises(ValidationError):
            ProviderConfig(base_url="llm.example")

    def test_empty_backoff_schedule_rejected(self):
        """Test the backoff schedule cannot be empty."""
        with pytest.raises(ValidationError):
            ResilienceConfig(backoff_schedule=[])

    def test_threshold_range(self):
        """Test the escalation threshold is a percentage."""
        with pytest.raises(ValidationError):
            PipelineConfig(escalation_threshold=101)

    def test_log_format(self):
        """Test only json and console formats are accepted."""
        with pytest.raises(ValidationError):
            ObservabilityConfig(log_format="xml")

    def test_environment_name(self):
        """Test unknown environments are rejected."""
        with pytest.raises(ValidationError):
            Settings(environment="qa")


class TestEnvironment:
    """DEEPEX_ environment overrides."""

    def test_nested_override(self, monkeypatch):
        """Test nested fields are read with the __ delimiter."""
        monkeypatch.setenv("DEEPEX_PIPELINE__TIME_BUDGET", "90")
        monkeypatch.setenv("DEEPEX_SEARCH__ENABLED", "false")

        settings = Settings()

        assert settings.pipeline.time_budget == 90.0
        assert settings.search.enabled is False

    def test_production_flag(self, monkeypatch):
        """Test the environment name drives is_production."""
        monkeypatch.setenv("DEEPEX_ENVIRONMENT", "production")

        assert Settings().is_production()
