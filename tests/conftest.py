"""Shared test fixtures."""

import pytest

from gatekeeper import config


@pytest.fixture(autouse=True)
def _reset_config(monkeypatch):
    """Every test starts from the default pricing, rate limits and models."""
    for var in (
        "GATEKEEPER_PRICING_JSON",
        "GATEKEEPER_RATE_LIMITS_JSON",
        "GATEKEEPER_MODELS_JSON",
        "GATEKEEPER_MAX_CONCURRENCY",
    ):
        monkeypatch.delenv(var, raising=False)
    config.reset_config()
    yield
    config.reset_config()
