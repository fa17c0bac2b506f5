"""
Pricing calculations and rate management.

Handles cost computations for metered models and services. Each model maps
to exactly one pricing kind, and cost resolution is a single exhaustive
match over that kind.
"""

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)

_MILLION = Decimal("1000000")
_SECONDS_PER_HOUR = Decimal("3600")
_COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class TokenRate:
    """Per-token pricing, rates in USD per million units."""
    input_per_million: Decimal
    output_per_million: Decimal
    cached_per_million: Optional[Decimal] = None


@dataclass(frozen=True)
class DurationRate:
    """Pricing by processed media duration, USD per hour."""
    per_hour: Decimal


@dataclass(frozen=True)
class RequestBatchRate:
    """Pricing per started block of 1000 requests."""
    per_thousand: Decimal


@dataclass(frozen=True)
class FlatPerUnit:
    """Flat price per unit (image, GB, task, ...)."""
    per_unit: Decimal


Pricing = Union[TokenRate, DurationRate, RequestBatchRate, FlatPerUnit]


@dataclass(frozen=True)
class UsageExtra:
    """Non-token usage measurements used by some pricing kinds."""
    duration_seconds: float = 0.0
    requests: int = 1
    units: float = 1.0
    cached_units: int = 0


def _tokens(input_rate: str, output_rate: str, cached_rate: Optional[str] = None) -> TokenRate:
    return TokenRate(
        input_per_million=Decimal(input_rate),
        output_per_million=Decimal(output_rate),
        cached_per_million=Decimal(cached_rate) if cached_rate is not None else None,
    )


DEFAULT_MODEL = "gpt-5"

DEFAULT_PRICES: Dict[str, Pricing] = {
    # OpenAI chat
    "gpt-5": _tokens("10.00", "30.00"),
    "gpt-5.2": _tokens("1.75", "14.00", "0.175"),
    "gpt-5.2-pro": _tokens("5.00", "40.00", "0.50"),
    "gpt-4o": _tokens("2.50", "10.00", "1.25"),
    "gpt-4o-mini": _tokens("0.15", "0.60", "0.075"),
    "gpt-4-turbo": _tokens("10.00", "30.00", "5.00"),
    "gpt-4": _tokens("30.00", "60.00"),
    # Anthropic
    "claude-sonnet-4-5-20250929": _tokens("3.00", "15.00"),
    "claude-opus-4-5-20251101": _tokens("5.00", "25.00"),
    "claude-haiku-4-5-20251101": _tokens("1.00", "5.00"),
    "claude-3-5-sonnet-20241022": _tokens("3.00", "15.00"),
    "claude-3-opus-20240229": _tokens("15.00", "75.00"),
    "claude-3-haiku-20240307": _tokens("0.25", "1.25"),
    # Google
    "gemini-3-flash": _tokens("1.00", "8.00"),
    "gemini-3-pro": _tokens("2.50", "15.00"),
    "gemini-2.5-flash": _tokens("1.25", "10.00"),
    # Embeddings and speech synthesis
    "text-embedding-3-small": _tokens("0.02", "0"),
    "text-embedding-3-large": _tokens("0.13", "0"),
    "text-embedding-ada-002": _tokens("0.10", "0"),
    "tts-1": _tokens("15.00", "0"),
    "tts-1-hd": _tokens("30.00", "0"),
    # Transcription
    "assemblyai-transcription": DurationRate(per_hour=Decimal("0.41")),
    "assemblyai-transcription-basic": DurationRate(per_hour=Decimal("0.25")),
    "whisper-1": DurationRate(per_hour=Decimal("0.36")),
    "deepgram-nova-3": DurationRate(per_hour=Decimal("0.258")),
    # Google Workspace APIs
    "google-drive-api": RequestBatchRate(per_thousand=Decimal("0.004")),
    "gmail-api": RequestBatchRate(per_thousand=Decimal("0.004")),
    "google-calendar-api": RequestBatchRate(per_thousand=Decimal("0.004")),
    # Storage and bandwidth, per GB
    "google-drive-storage": FlatPerUnit(per_unit=Decimal("0.026")),
    "supabase-storage": FlatPerUnit(per_unit=Decimal("0.021")),
    "vercel-bandwidth": FlatPerUnit(per_unit=Decimal("0.40")),
    # Images, per image
    "dall-e-3": FlatPerUnit(per_unit=Decimal("0.040")),
    "dall-e-2": FlatPerUnit(per_unit=Decimal("0.020")),
}


class PricingRegistry:
    """Model id -> pricing lookup with a designated fallback model."""

    def __init__(
        self,
        prices: Optional[Dict[str, Pricing]] = None,
        default_model: str = DEFAULT_MODEL,
    ):
        self._prices: Dict[str, Pricing] = dict(DEFAULT_PRICES if prices is None else prices)
        if default_model not in self._prices:
            raise ValueError(f"Default pricing model not in table: {default_model}")
        self.default_model = default_model

    def register(self, model: str, pricing: Pricing) -> None:
        """Add or replace the pricing for a model."""
        self._prices[model] = pricing

    def models(self) -> Tuple[str, ...]:
        return tuple(sorted(self._prices))

    def get_pricing(self, model: str) -> Tuple[Pricing, bool]:
        """Get pricing for a specific model.

        Unknown models fall back to the default model's pricing. This keeps
        metering alive for new model ids at the price of possibly mis-pricing
        them, so every fallback is logged.

        Args:
            model: Model identifier

        Returns:
            Tuple of (pricing, known) where known is False on fallback
        """
        pricing = self._prices.get(model)
        if pricing is not None:
            return pricing, True

        logger.warning(
            "Unknown pricing model %r, using %r pricing", model, self.default_model
        )
        return self._prices[self.default_model], False

    def compute_cost(
        self,
        model: str,
        input_units: int,
        output_units: int,
        extra: Optional[UsageExtra] = None,
    ) -> float:
        """Calculate cost for one metered call with conservative rounding.

        Args:
            model: Model identifier
            input_units: Input units (tokens for token-priced models)
            output_units: Output units
            extra: Duration, request count, unit count or cached units

        Returns:
            Cost in USD rounded UP to 6 decimal places
        """
        if input_units < 0 or output_units < 0:
            raise ValueError("units cannot be negative")

        pricing, _ = self.get_pricing(model)
        cost = price(pricing, input_units, output_units, extra or UsageExtra())
        return float(cost.quantize(_COST_QUANTUM, rounding=ROUND_UP))


def price(pricing: Pricing, input_units: int, output_units: int, extra: UsageExtra) -> Decimal:
    """Resolve the cost of a usage under one pricing kind."""
    match pricing:
        case TokenRate(input_per_million=rate_in, output_per_million=rate_out, cached_per_million=rate_cached):
            cached = min(extra.cached_units, input_units) if rate_cached is not None else 0
            uncached = input_units - cached
            total = Decimal(uncached) * rate_in + Decimal(output_units) * rate_out
            if cached:
                total += Decimal(cached) * rate_cached
            return total / _MILLION
        case DurationRate(per_hour=rate):
            hours = Decimal(str(extra.duration_seconds)) / _SECONDS_PER_HOUR
            return hours * rate
        case RequestBatchRate(per_thousand=rate):
            return Decimal(math.ceil(extra.requests / 1000)) * rate
        case FlatPerUnit(per_unit=rate):
            return Decimal(str(extra.units)) * rate
        case _:
            raise TypeError(f"Unsupported pricing kind: {type(pricing).__name__}")


# Registry with the built-in table
PRICING_REGISTRY = PricingRegistry()


def compute_cost(
    model: str,
    input_units: int,
    output_units: int,
    extra: Optional[UsageExtra] = None,
) -> float:
    """Calculate cost using the built-in pricing table."""
    return PRICING_REGISTRY.compute_cost(model, input_units, output_units, extra)
