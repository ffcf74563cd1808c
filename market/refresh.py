"""
Quote refresh: fetch samples from a market data provider, smooth them into a
quote and persist it (subject to the freshness window).

The collection-wide refresh walks variants one at a time behind a token
bucket. A failing variant is logged and skipped; it never stops the batch.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from threading import Event
from typing import List, Optional

import structlog

from collection.errors import NotFoundError, ValidationError
from collection.history import record_profit_loss
from collection.models import parse_money
from config.settings import Settings, get_settings
from db.connection import borrow
from db.queries import get_lot_rows, get_product
from market.aggregator import CENT, MarketQuote, aggregate
from market.ebay import ExternalProviderError, MarketDataProvider, VariantDescriptor
from market.prices import QuoteKey, persist_quote
from market.rate_limit import TokenBucket

log = structlog.get_logger(__name__)


@dataclass
class RefreshResult:
    key: QuoteKey
    quote: Optional[MarketQuote] = None
    persisted: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.quote is not None

    def to_dict(self) -> dict:
        return {
            "product_id": self.key.product_id,
            "grading_company": self.key.grading_company or None,
            "grade": self.key.grade or None,
            "condition": self.key.condition or None,
            "price": self.quote.price if self.quote else None,
            "sample_count": self.quote.sample_count if self.quote else 0,
            "low_confidence": self.quote.low_confidence if self.quote else None,
            "persisted": self.persisted,
            "error": self.error,
        }


@dataclass
class BatchRefreshResult:
    results: List[RefreshResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def updated(self) -> int:
        """Variants for which a quote was computed."""
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def persisted(self) -> int:
        return sum(1 for r in self.results if r.persisted)


def descriptor_for(product: dict, key: QuoteKey) -> VariantDescriptor:
    return VariantDescriptor(
        name=product["name"],
        set_name=product.get("set_name"),
        card_number=product.get("card_number"),
        grading_company=key.grading_company or None,
        grade=key.grade or None,
    )


def refresh_variant(
    key: QuoteKey,
    provider: MarketDataProvider,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> RefreshResult:
    """
    Fetch and smooth a quote for one variant and try to persist it.

    Provider failures and empty results come back as a result without a quote;
    this function does not raise for them. When persistence is skipped because
    a fresh quote exists, the computed quote is still returned.
    """
    settings = settings or get_settings()
    with borrow() as conn:
        product = get_product(conn, key.product_id)
    if product is None:
        return RefreshResult(key, error=f"product {key.product_id} not found")

    descriptor = descriptor_for(product, key)
    try:
        samples = provider.fetch_samples(descriptor)
    except ExternalProviderError as e:
        log.warning("quote_refresh_failed", product_id=key.product_id, keywords=descriptor.keywords, error=str(e))
        return RefreshResult(key, error=str(e))

    quote = aggregate(
        samples,
        fraction=settings.quote_trim_fraction,
        currency=settings.quote_currency,
        low_confidence_samples=settings.quote_low_confidence_samples,
    )
    if quote is None:
        log.info("quote_unavailable", product_id=key.product_id, keywords=descriptor.keywords,
                 sample_count=len(samples))
        return RefreshResult(key, error="no usable price samples")

    persisted = persist_quote(key, quote, now=now)
    return RefreshResult(key, quote=quote, persisted=persisted)


def save_manual_quote(
    key: QuoteKey,
    price,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Decimal:
    """
    Record a hand-entered price for a variant, bypassing the freshness window.

    When user_id is given the user's profit/loss is recorded again against the
    new quote.
    """
    price = parse_money(price, "price").quantize(CENT, rounding=ROUND_HALF_UP)
    if price < 0:
        raise ValidationError("price must not be negative")
    with borrow() as conn:
        if get_product(conn, key.product_id) is None:
            raise NotFoundError(f"product {key.product_id} not found")

    persist_quote(key, price, now=now, source="manual", force=True)
    if user_id:
        record_profit_loss(user_id, recorded_at=now)
    return price


def collection_quote_keys(user_id: str) -> List[QuoteKey]:
    """Distinct quote keys across the user's lots, in lot order."""
    with borrow() as conn:
        rows = get_lot_rows(conn, user_id)
    seen = {}
    for row in rows:
        seen.setdefault(QuoteKey.from_row(row), None)
    return list(seen)


def refresh_collection(
    user_id: str,
    provider: MarketDataProvider,
    limiter: Optional[TokenBucket] = None,
    cancel: Optional[Event] = None,
    settings: Optional[Settings] = None,
) -> BatchRefreshResult:
    """
    Refresh quotes for every variant the user holds, sequentially.

    The limiter is consulted before each provider call. Setting cancel stops
    the batch between variants; quotes persisted so far are kept.
    """
    settings = settings or get_settings()
    if limiter is None:
        limiter = TokenBucket(settings.market_requests_per_second, settings.market_burst)

    batch = BatchRefreshResult()
    keys = collection_quote_keys(user_id)
    log.info("collection_refresh_started", user_id=user_id, variants=len(keys))
    for key in keys:
        if cancel is not None and cancel.is_set():
            batch.cancelled = True
            log.info("collection_refresh_cancelled", user_id=user_id, done=len(batch.results))
            break
        limiter.wait_for_token()
        try:
            result = refresh_variant(key, provider, settings=settings)
        except Exception as e:
            log.exception("quote_refresh_error", user_id=user_id, product_id=key.product_id)
            result = RefreshResult(key, error=str(e))
        batch.results.append(result)

    if batch.persisted:
        record_profit_loss(user_id)
    log.info("collection_refresh_finished", user_id=user_id, updated=batch.updated,
             failed=batch.failed, persisted=batch.persisted)
    return batch
