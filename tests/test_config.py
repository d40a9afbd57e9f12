"""Tests for settings, preset tables and the application lifespan."""

import pytest
from pydantic import ValidationError

from atelier.app import lifespan
from atelier.core.config import (
    OrchestratorConfig,
    ProviderConfig,
    QualityTierConfig,
    Settings,
    TierTable,
    default_provider_registry,
    default_tier_table,
)
from atelier.models.generation_job import QualityTier


def test_missing_api_key_fails_outside_test_env(monkeypatch):
    monkeypatch.delenv("PROVIDER_API_KEY", raising=False)
    monkeypatch.setenv("APP_ENV", "production")

    with pytest.raises(ValidationError) as exc_info:
        Settings()  # type: ignore[call-arg]

    assert "PROVIDER_API_KEY" in str(exc_info.value)


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("PROVIDER_API_KEY", "secret")
    monkeypatch.setenv("POLL_INTERVAL_MS", "500")
    monkeypatch.setenv("RETRY_EMPHASIS_GAIN", "1.5")

    settings = Settings()  # type: ignore[call-arg]

    assert settings.provider_api_key == "secret"
    assert settings.poll_interval_ms == 500
    assert OrchestratorConfig.from_settings(settings).retry_emphasis_gain == 1.5


def test_default_tier_table_presets():
    tiers = default_tier_table()

    assert [str(tiers.get(tier).base_cost) for tier in QualityTier] == [
        "0.04",
        "0.08",
        "0.16",
        "0.32",
    ]
    assert tiers.get(QualityTier.ULTRA).base_time_seconds == 120


def test_tier_table_requires_every_tier():
    basic = default_tier_table().get(QualityTier.BASIC)

    with pytest.raises(ValidationError):
        TierTable(tiers=(basic,))


def test_tier_config_is_immutable():
    config = default_tier_table().get(QualityTier.BASIC)

    with pytest.raises(ValidationError):
        config.base_time_seconds = 1  # type: ignore[misc]
    assert isinstance(config, QualityTierConfig)


def test_provider_headers_include_auth_only_when_key_set(settings):
    registry = default_provider_registry(settings)

    assert "x-key" not in registry["flux_kontext"].headers
    assert registry["flux_kontext"].endpoint == settings.provider_endpoint

    keyed = ProviderConfig(provider_id="p", name="P", endpoint="https://p.test", api_key="k")
    assert keyed.headers["x-key"] == "k"


@pytest.mark.asyncio
async def test_lifespan_yields_service_and_shuts_down(settings):
    async with lifespan(settings) as service:
        assert set(service.providers) == {"flux_kontext", "flux_kontext_max"}
        assert service.config.poll_interval_ms == settings.poll_interval_ms
