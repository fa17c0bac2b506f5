"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, fallback and each pricing kind.
"""

import logging
from decimal import Decimal

import pytest

from spend_governor.core.pricing import (
    DEFAULT_MODEL,
    PRICING_REGISTRY,
    DurationRate,
    FlatPerUnit,
    PricingRegistry,
    RequestBatchRate,
    TokenRate,
    UsageExtra,
    compute_cost,
    price,
)
from spend_governor.core.token_counter import (
    estimate_message_units,
    estimate_units,
    estimate_units_for_bytes,
)


class TestTokenEstimation:
    """Test pre-flight unit estimation."""

    def test_estimate_units_rounds_up(self):
        assert estimate_units("") == 0
        assert estimate_units("abcd") == 1
        assert estimate_units("abcde") == 2

    def test_estimate_units_for_bytes(self):
        assert estimate_units_for_bytes(0) == 0
        assert estimate_units_for_bytes(4096) == 1024

    def test_estimate_message_units(self):
        messages = [
            {"role": "system", "content": "abcd"},
            {"role": "user", "content": "efgh"},
            {"role": "assistant", "content": None},
        ]
        # "abcd efgh" is 9 characters
        assert estimate_message_units(messages) == 3


class TestPricingRegistry:
    """Test pricing table functionality."""

    def test_get_known_model(self):
        pricing, known = PRICING_REGISTRY.get_pricing("gpt-4")
        assert known is True
        assert pricing == TokenRate(Decimal("30.00"), Decimal("60.00"))

    def test_unknown_model_falls_back_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="spend_governor.core.pricing"):
            pricing, known = PRICING_REGISTRY.get_pricing("unknown-model")

        assert known is False
        assert pricing == PRICING_REGISTRY.get_pricing(DEFAULT_MODEL)[0]
        assert "unknown-model" in caplog.text

    def test_unknown_model_cost_uses_default(self):
        assert compute_cost("unknown-model", 1000, 1000) == compute_cost(DEFAULT_MODEL, 1000, 1000)

    def test_register_overrides_entry(self):
        registry = PricingRegistry()
        registry.register("gpt-4", TokenRate(Decimal("1"), Decimal("1")))
        assert registry.compute_cost("gpt-4", 1_000_000, 0) == 1.0
        # the shared table is untouched
        assert PRICING_REGISTRY.compute_cost("gpt-4", 1_000_000, 0) == 30.0

    def test_default_model_must_be_priced(self):
        with pytest.raises(ValueError, match="Default pricing model"):
            PricingRegistry(prices={}, default_model="gpt-5")

    def test_models_listing(self):
        models = PRICING_REGISTRY.models()
        assert "gpt-5" in models
        assert list(models) == sorted(models)


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_one_million_input_units_costs_input_rate(self):
        """Exactly 1M input units with no output costs the input rate."""
        assert compute_cost("gpt-4o", 1_000_000, 0) == 2.50
        assert compute_cost("gpt-5", 1_000_000, 0) == 10.00

    def test_exact_cost_gpt4(self):
        # 1000 * 30/1M + 500 * 60/1M = 0.03 + 0.03
        assert compute_cost("gpt-4", 1000, 500) == 0.06

    def test_zero_units(self):
        assert compute_cost("gpt-4", 0, 0) == 0.0

    def test_rounds_up_to_six_decimals(self):
        # 1 * 0.15/1M = 0.00000015, rounded up to the next micro-dollar
        assert compute_cost("gpt-4o-mini", 1, 0) == 0.000001

    def test_negative_units_rejected(self):
        with pytest.raises(ValueError, match="units cannot be negative"):
            compute_cost("gpt-4", -1, 0)
        with pytest.raises(ValueError, match="units cannot be negative"):
            compute_cost("gpt-4", 0, -1)

    def test_cached_input_billed_at_cached_rate(self):
        full = compute_cost("gpt-4o", 1_000_000, 0)
        half_cached = compute_cost("gpt-4o", 1_000_000, 0, UsageExtra(cached_units=500_000))
        # 500k * 2.50/1M + 500k * 1.25/1M
        assert full == 2.50
        assert half_cached == 1.875

    def test_cached_units_ignored_without_cached_rate(self):
        assert compute_cost("gpt-4", 1000, 0, UsageExtra(cached_units=1000)) == 0.03

    def test_duration_pricing(self):
        # 30 minutes of whisper at $0.36/hour
        assert compute_cost("whisper-1", 0, 0, UsageExtra(duration_seconds=1800)) == 0.18

    def test_request_batch_pricing_rounds_to_started_thousand(self):
        assert compute_cost("gmail-api", 0, 0, UsageExtra(requests=1)) == 0.004
        assert compute_cost("gmail-api", 0, 0, UsageExtra(requests=1000)) == 0.004
        assert compute_cost("gmail-api", 0, 0, UsageExtra(requests=1001)) == 0.008

    def test_flat_per_unit_pricing(self):
        assert compute_cost("dall-e-3", 0, 0, UsageExtra(units=3)) == 0.12
        assert compute_cost("dall-e-3", 0, 0) == 0.04


class TestPriceMatch:
    """Test resolution over each pricing kind."""

    def test_every_kind_resolves(self):
        extra = UsageExtra(duration_seconds=3600, requests=2000, units=2)
        assert price(TokenRate(Decimal("1"), Decimal("2")), 1_000_000, 1_000_000, extra) == Decimal("3")
        assert price(DurationRate(Decimal("0.5")), 0, 0, extra) == Decimal("0.5")
        assert price(RequestBatchRate(Decimal("0.004")), 0, 0, extra) == Decimal("0.008")
        assert price(FlatPerUnit(Decimal("0.25")), 0, 0, extra) == Decimal("0.50")

    def test_unsupported_kind_raises(self):
        with pytest.raises(TypeError, match="Unsupported pricing kind"):
            price(object(), 1, 1, UsageExtra())
