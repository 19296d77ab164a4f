"""Global configuration for Gatekeeper."""

from __future__ import annotations

import copy
import json
import os
from typing import Dict, Any

from gatekeeper.validation import ValidationError, validate_concurrency


FREE_MODEL = "meta-llama/llama-3.1-8b-instruct:free"
PREMIUM_MODEL = "qwen/qwen3-235b-a22b-2507"
HIGH_CAPABILITY_MODEL = "moonshotai/kimi-k2"

# USD per 1,000 tokens
DEFAULT_PRICING: Dict[str, Dict[str, float]] = {
    FREE_MODEL: {"input": 0.0, "output": 0.0},
    PREMIUM_MODEL: {"input": 0.15, "output": 0.30},
    HIGH_CAPABILITY_MODEL: {"input": 0.20, "output": 0.40},
}

DEFAULT_RATE_LIMITS: Dict[str, Dict[str, Any]] = {
    FREE_MODEL: {"window_seconds": 60.0, "max_requests": 20, "model_type": "free"},
    PREMIUM_MODEL: {"window_seconds": 60.0, "max_requests": 60, "model_type": "premium"},
}

DEFAULT_MODELS: Dict[str, str] = {
    "free": FREE_MODEL,
    "premium": PREMIUM_MODEL,
    "high_capability": HIGH_CAPABILITY_MODEL,
}

DEFAULT_CONCURRENCY = 5

# Operations worth the premium model while budget headroom exists
PREMIUM_OPERATIONS = frozenset({"calendar_analysis"})
# Operations that should run on the free tier
BULK_OPERATIONS = frozenset({"bulk_operations"})

_pricing: Dict[str, Dict[str, float]] = copy.deepcopy(DEFAULT_PRICING)
_rate_limits: Dict[str, Dict[str, Any]] = copy.deepcopy(DEFAULT_RATE_LIMITS)
_models: Dict[str, str] = copy.deepcopy(DEFAULT_MODELS)


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def get_pricing() -> Dict[str, Dict[str, float]]:
    """Return pricing configuration, with optional env override."""
    parsed = _parse_json_env("GATEKEEPER_PRICING_JSON")
    if parsed:
        return parsed
    return _pricing


def set_pricing(pricing: Dict[str, Dict[str, float]]) -> None:
    """Set pricing at runtime."""
    if not isinstance(pricing, dict) or not pricing:
        raise ValueError("pricing must be a non-empty dict")
    for model, rates in pricing.items():
        if not isinstance(rates, dict) or "input" not in rates or "output" not in rates:
            raise ValueError(f"pricing for {model} must include 'input' and 'output'")
    global _pricing
    _pricing = copy.deepcopy(pricing)


def get_rate_limits() -> Dict[str, Dict[str, Any]]:
    """Return per-model rate limit configuration, with optional env override."""
    parsed = _parse_json_env("GATEKEEPER_RATE_LIMITS_JSON")
    if parsed:
        return parsed
    return _rate_limits


def set_rate_limits(limits: Dict[str, Dict[str, Any]]) -> None:
    """Set per-model rate limits at runtime."""
    if not isinstance(limits, dict):
        raise ValueError("rate limits must be a dict")
    for model, entry in limits.items():
        if not isinstance(entry, dict) or "window_seconds" not in entry or "max_requests" not in entry:
            raise ValueError(
                f"rate limit for {model} must include 'window_seconds' and 'max_requests'"
            )
    global _rate_limits
    _rate_limits = copy.deepcopy(limits)


def get_models() -> Dict[str, str]:
    """Return model tier configuration, with optional env override."""
    parsed = _parse_json_env("GATEKEEPER_MODELS_JSON")
    if parsed:
        return parsed
    return _models


def set_models(
    *,
    free: str | None = None,
    premium: str | None = None,
    high_capability: str | None = None,
) -> None:
    """Set model tiers at runtime."""
    global _models
    updated = copy.deepcopy(_models)
    if free:
        updated["free"] = free
    if premium:
        updated["premium"] = premium
    if high_capability:
        updated["high_capability"] = high_capability
    _models = updated


def get_default_concurrency() -> int:
    """Return the default concurrency ceiling (GATEKEEPER_MAX_CONCURRENCY)."""
    value = os.getenv("GATEKEEPER_MAX_CONCURRENCY")
    if not value:
        return DEFAULT_CONCURRENCY
    try:
        limit = int(value)
        validate_concurrency(limit)
    except (ValueError, ValidationError):
        return DEFAULT_CONCURRENCY
    return limit


def reset_config() -> None:
    """Restore all defaults (mostly useful in tests)."""
    global _pricing, _rate_limits, _models
    _pricing = copy.deepcopy(DEFAULT_PRICING)
    _rate_limits = copy.deepcopy(DEFAULT_RATE_LIMITS)
    _models = copy.deepcopy(DEFAULT_MODELS)
