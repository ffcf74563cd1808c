"""
Market quote aggregation: turn a batch of observed sale prices into one quote.

Listings for the same variant are noisy (mispriced auctions, bundles, damaged
copies), so the quote is a trimmed mean: sort, drop the lowest and highest
15% by count, average what is left.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PriceSample:
    """One observed sale price for a variant."""
    price: Decimal
    currency: str = "USD"
    condition: Optional[str] = None
    source_url: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class MarketQuote:
    price: Decimal
    sample_count: int
    trimmed_count: int
    low_confidence: bool = False

    @property
    def used_count(self) -> int:
        return self.sample_count - self.trimmed_count


def trim_count(n: int, fraction: float = 0.15) -> int:
    """Number of samples dropped from EACH end of a sorted batch of n."""
    return math.floor(n * fraction)


def trimmed_mean(values: Sequence[Decimal], fraction: float = 0.15) -> Optional[Decimal]:
    """Mean of values after dropping floor(fraction * n) from each end. None if nothing is left."""
    if not values:
        return None
    ordered = sorted(values)
    k = trim_count(len(ordered), fraction)
    kept = ordered[k:len(ordered) - k]
    if not kept:
        return None
    return sum(kept, Decimal("0")) / len(kept)


def aggregate(
    samples: Iterable[PriceSample],
    fraction: float = 0.15,
    currency: Optional[str] = "USD",
    low_confidence_samples: int = 6,
) -> Optional[MarketQuote]:
    """
    Smooth a batch of samples into one MarketQuote.

    Args:
        samples: sale prices for a single variant. Non-finite and negative
            prices are dropped.
        fraction: share of samples trimmed from each end.
        currency: only samples in this currency are used (None accepts all).
        low_confidence_samples: batches this small or smaller are flagged.

    Returns:
        MarketQuote rounded to cents, or None when there is nothing to price
        (empty input or everything trimmed away).
    """
    prices = [
        Decimal(str(s.price))
        for s in samples
        if currency is None or (s.currency or "").upper() == currency.upper()
    ]
    prices = [p for p in prices if p.is_finite() and p >= 0]
    mean = trimmed_mean(prices, fraction)
    if mean is None:
        return None
    n = len(prices)
    return MarketQuote(
        price=mean.quantize(CENT, rounding=ROUND_HALF_UP),
        sample_count=n,
        trimmed_count=2 * trim_count(n, fraction),
        low_confidence=n <= low_confidence_samples,
    )
