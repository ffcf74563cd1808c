"""
eBay Browse API as a market data provider.

Each EbayClient owns its OAuth (client credentials) token and refreshes it
shortly before expiry. The token is guarded by a lock so one client can be
shared between concurrent refresh jobs.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from threading import Lock
from typing import Callable, List, Optional, Protocol

import httpx
import structlog

from market.aggregator import PriceSample

log = structlog.get_logger(__name__)

EBAY_BROWSE_ENDPOINT = "https://api.ebay.com/buy/browse/v1/item_summary/search"
EBAY_OAUTH_ENDPOINT = "https://api.ebay.com/identity/v1/oauth2/token"
EBAY_SCOPE = "https://api.ebay.com/oauth/api_scope"

TOKEN_REFRESH_MARGIN_SECONDS = 60


class ExternalProviderError(Exception):
    """The market data provider failed for this call."""


@dataclass(frozen=True)
class VariantDescriptor:
    name: str
    set_name: Optional[str] = None
    card_number: Optional[str] = None
    grading_company: Optional[str] = None
    grade: Optional[str] = None

    @property
    def keywords(self) -> str:
        parts = [self.name]
        if self.set_name:
            parts.append(self.set_name)
        if self.card_number:
            parts.append(self.card_number)
        if self.grading_company and self.grade:
            parts.append(f"{self.grading_company} {self.grade}")
        elif self.grading_company:
            parts.append(self.grading_company)
        return " ".join(p.strip() for p in parts if p and p.strip())


class MarketDataProvider(Protocol):
    def fetch_samples(self, descriptor: VariantDescriptor) -> List[PriceSample]:
        ...


def _to_decimal(v) -> Optional[Decimal]:
    """Listed price as Decimal; None for missing, unparsable, non-finite or negative values."""
    if v is None:
        return None
    try:
        value = Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


class EbayClient:
    """Fetch sold-price samples from eBay for a variant."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http: Optional[httpx.Client] = None,
        timeout: float = 15.0,
        limit: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.limit = limit
        self._http = http or httpx.Client(
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": "collection-valuation/1.0"},
        )
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings) -> EbayClient:
        return cls(
            settings.ebay_client_id,
            settings.ebay_client_secret,
            timeout=settings.ebay_timeout_seconds,
            limit=settings.ebay_sample_limit,
        )

    def close(self) -> None:
        self._http.close()

    def access_token(self) -> str:
        """Return a valid access token, requesting a new one if it expires within a minute."""
        with self._lock:
            now = self._clock()
            if self._token and self._token_expires_at > now + TOKEN_REFRESH_MARGIN_SECONDS:
                return self._token
            try:
                resp = self._http.post(
                    EBAY_OAUTH_ENDPOINT,
                    data={"grant_type": "client_credentials", "scope": EBAY_SCOPE},
                    auth=(self.client_id, self.client_secret),
                )
                resp.raise_for_status()
                payload = resp.json()
                self._token = payload["access_token"]
                self._token_expires_at = now + float(payload.get("expires_in", 0))
            except (httpx.HTTPError, ValueError, KeyError) as e:
                self._token = None
                raise ExternalProviderError(f"eBay token request failed: {e}") from e
            log.debug("ebay_token_refreshed", expires_in=self._token_expires_at - now)
            return self._token

    def fetch_samples(self, descriptor: VariantDescriptor) -> List[PriceSample]:
        """
        Search eBay for the variant and return one PriceSample per priced listing.

        Raises ExternalProviderError on transport, HTTP or payload errors. An
        empty list means the search succeeded but found nothing.
        """
        token = self.access_token()
        params = {"q": descriptor.keywords, "limit": self.limit, "sort": "price"}
        try:
            resp = self._http.get(
                EBAY_BROWSE_ENDPOINT,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
            resp.raise_for_status()
            payload = resp.json() or {}
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalProviderError(f"eBay search failed for {descriptor.keywords!r}: {e}") from e

        samples = []
        for item in payload.get("itemSummaries") or []:
            price = item.get("price") or {}
            value = _to_decimal(price.get("value"))
            if value is None:
                continue
            samples.append(PriceSample(
                price=value,
                currency=price.get("currency") or "USD",
                condition=item.get("condition"),
                source_url=item.get("itemWebUrl"),
                title=item.get("title"),
            ))
        log.debug("ebay_samples_fetched", keywords=descriptor.keywords, count=len(samples))
        return samples
