"""
Shared fixtures for the collection valuation tests.
Run with: python -m pytest tests/ -v
"""
import os
import sqlite3
import sys
import tempfile
from decimal import Decimal

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from market.aggregator import PriceSample
from market.ebay import ExternalProviderError


PRODUCTS = [
    (1, "Charizard ex", "card", "Obsidian Flames", "125"),
    (2, "Pikachu", "card", "Base Set", "58"),
    (3, "Prismatic Evolutions Elite Trainer Box", "sealed_product", "Prismatic Evolutions", None),
    (4, "Umbreon ex", "card", "Prismatic Evolutions", "161"),
]


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    # Override DB_PATH for testing
    import db.connection
    original_path = db.connection.DB_PATH
    db.connection.DB_PATH = path

    from db.connection import init_db
    init_db()

    yield path

    db.connection.DB_PATH = original_path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def products(temp_db):
    """Insert sample catalog rows."""
    conn = sqlite3.connect(temp_db)
    conn.executemany(
        "INSERT INTO products (id, name, product_type, set_name, card_number) VALUES (?, ?, ?, ?, ?)",
        PRODUCTS,
    )
    conn.commit()
    conn.close()
    return {p[0]: p for p in PRODUCTS}


class FakeProvider:
    """Market data provider returning canned prices per product id."""

    def __init__(self, prices=None, failing=()):
        self.prices = prices or {}
        self.failing = set(failing)
        self.calls = []

    def fetch_samples(self, descriptor):
        self.calls.append(descriptor)
        product_id = PRODUCT_IDS[descriptor.name]
        if product_id in self.failing:
            raise ExternalProviderError("provider unavailable")
        return [PriceSample(price=Decimal(str(v))) for v in self.prices.get(product_id, ())]


PRODUCT_IDS = {p[1]: p[0] for p in PRODUCTS}


class NoWaitLimiter:
    def __init__(self):
        self.waits = 0

    def wait_for_token(self, n=1):
        self.waits += n


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture
def limiter():
    return NoWaitLimiter()
