"""
Tests for the Flask API: routing, JSON shapes and error mapping.
"""
from decimal import Decimal

import pytest

import api.app
from api.app import create_app
from collection.errors import ConcurrencyConflict, PersistenceError


@pytest.fixture
def provider(fake_provider):
    return fake_provider({1: [100, 110, 120], 2: [5]})


@pytest.fixture
def client(temp_db, products, provider, limiter):
    app = create_app(provider=provider)
    app.config["TESTING"] = True
    app.config["MARKET_LIMITER"] = limiter
    return app.test_client()


def acquire(client, **body):
    payload = {"product_id": 1, "quantity": 1, "unit_cost": "100"}
    payload.update(body)
    resp = client.post("/api/collection/ash", json=payload)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["lot"]


class TestHealth:

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok"}


class TestCollectionEndpoints:

    def test_acquire_and_list(self, client):
        lot = acquire(client, condition="NM", quantity=2, unit_cost="10")
        assert lot["quantity"] == 2

        data = client.get("/api/collection/ash").get_json()
        assert data["count"] == 1
        assert data["groups"][0]["quantity"] == 2
        assert data["groups"][0]["current_value"] is None
        assert Decimal(data["summary"]["lifetime_earnings"]) == Decimal("-20")

    def test_acquire_validation(self, client):
        resp = client.post("/api/collection/ash", json={"quantity": 1})
        assert resp.status_code == 400
        resp = client.post("/api/collection/ash", json={"product_id": 1, "grading_company": "PSA"})
        assert resp.status_code == 400

    def test_acquire_unknown_product(self, client):
        resp = client.post("/api/collection/ash", json={"product_id": 999, "unit_cost": "1"})
        assert resp.status_code == 404

    def test_sell_lot(self, client):
        lot = acquire(client)
        resp = client.delete(f"/api/collection/ash/lots/{lot['id']}", json={"sold_price": "150"})
        assert resp.status_code == 200
        assert Decimal(resp.get_json()["lifetime_earnings"]) == Decimal("50")

    def test_remove_missing_lot(self, client):
        assert client.delete("/api/collection/ash/lots/42").status_code == 404

    def test_stats(self, client):
        acquire(client, quantity=2, unit_cost="10")
        acquire(client, product_id=3, unit_cost="50")
        data = client.get("/api/collection/ash/stats").get_json()
        assert data["total_cards"] == 2
        assert data["total_sealed"] == 1
        assert Decimal(data["total_investment"]) == Decimal("70")
        assert data["sets"] == ["Obsidian Flames", "Prismatic Evolutions"]

    def test_alerts(self, client):
        acquire(client, unit_cost="100")
        acquire(client, product_id=2, unit_cost="5")
        client.post("/api/prices/1", json={"price": "80"})
        client.post("/api/prices/2", json={"price": "5.20"})
        data = client.get("/api/collection/ash/alerts").get_json()
        assert data["count"] == 1
        assert data["alerts"][0]["product_id"] == 1
        assert Decimal(data["alerts"][0]["price_change"]) == Decimal("-20")


class TestTradeEndpoints:

    def trade_body(self, lot_id, **overrides):
        body = {
            "traded_away": [{"lot_id": lot_id, "quantity": 1, "quote": "120"}],
            "received": [{"product_id": 2, "condition": "NM", "quantity": 1, "quote": "90"}],
            "cash_delta": "-50",
        }
        body.update(overrides)
        return body

    def test_settle(self, client):
        lot = acquire(client)
        resp = client.post("/api/collection/ash/trades", json=self.trade_body(lot["id"]))
        assert resp.status_code == 201
        data = resp.get_json()
        assert Decimal(data["ledger_delta"]) == Decimal("20")
        assert Decimal(data["lifetime_earnings"]) == Decimal("-80")
        assert Decimal(data["trade"]["allocatable_basis"]) == Decimal("75")

        trades = client.get("/api/collection/ash/trades").get_json()
        assert trades["count"] == 1

        trade_id = data["trade"]["id"]
        one = client.get(f"/api/collection/ash/trades/{trade_id}").get_json()
        assert one["received"][0]["product_id"] == 2
        assert client.get(f"/api/collection/misty/trades/{trade_id}").status_code == 404

    def test_missing_quote_is_400(self, client):
        lot = acquire(client)
        body = self.trade_body(lot["id"], received=[{"product_id": 2, "quantity": 1}])
        assert client.post("/api/collection/ash/trades", json=body).status_code == 400

    def test_unknown_lot_is_404(self, client):
        assert client.post("/api/collection/ash/trades", json=self.trade_body(999)).status_code == 404

    def test_non_object_body_is_400(self, client):
        assert client.post("/api/collection/ash/trades", json=[1, 2]).status_code == 400

    def test_conflict_is_409(self, client, monkeypatch):
        lot = acquire(client)

        def busy(*args, **kwargs):
            raise ConcurrencyConflict("collection is being modified by another request")

        monkeypatch.setattr(api.app, "settle", busy)
        assert client.post("/api/collection/ash/trades", json=self.trade_body(lot["id"])).status_code == 409

    def test_storage_failure_is_500(self, client, monkeypatch):
        lot = acquire(client)

        def broken(*args, **kwargs):
            raise PersistenceError("disk I/O error")

        monkeypatch.setattr(api.app, "settle", broken)
        resp = client.post("/api/collection/ash/trades", json=self.trade_body(lot["id"]))
        assert resp.status_code == 500
        assert "no changes" in resp.get_json()["error"]

    def test_stat_history(self, client):
        lot = acquire(client)
        client.post("/api/collection/ash/trades", json=self.trade_body(lot["id"]))
        data = client.get("/api/collection/ash/stat-history?metric=lifetime_earnings").get_json()
        assert [Decimal(p["value"]) for p in data["points"]] == [Decimal("-100"), Decimal("-80")]

    def test_stat_history_bad_timestamp(self, client):
        assert client.get("/api/collection/ash/stat-history?start=yesterday").status_code == 400

    def test_stat_history_accepts_zulu_suffix(self, client):
        acquire(client)
        resp = client.get("/api/collection/ash/stat-history?start=2026-01-01T00:00:00Z&end=2999-01-01T00:00:00z")
        assert resp.status_code == 200
        assert len(resp.get_json()["points"]) >= 1


class TestPriceEndpoints:

    def test_refresh_and_history(self, client):
        resp = client.post("/api/prices/1/refresh?grading_company=PSA&grade=10")
        assert resp.status_code == 200
        data = resp.get_json()
        assert Decimal(data["price"]) == Decimal("110.00")
        assert data["persisted"] is True

        history = client.get("/api/prices/1/history?grading_company=PSA&grade=10").get_json()
        assert len(history["data"]) == 1
        assert client.get("/api/prices/1/history").get_json()["data"] == []

    def test_save_manual_price(self, client):
        acquire(client, unit_cost="100")
        resp = client.post("/api/prices/1", json={"price": "125", "user_id": "ash"})
        assert resp.status_code == 201
        assert Decimal(resp.get_json()["price"]) == Decimal("125.00")

        history = client.get("/api/prices/1/history").get_json()["data"]
        assert history[-1]["source"] == "manual"
        points = client.get("/api/collection/ash/stat-history?metric=profit_loss_pct").get_json()["points"]
        assert Decimal(points[-1]["value"]) == Decimal("25")

    def test_save_manual_price_validation(self, client):
        assert client.post("/api/prices/1", json={"price": "-3"}).status_code == 400
        assert client.post("/api/prices/1", json={}).status_code == 400
        assert client.post("/api/prices/1", json="125").status_code == 400
        assert client.post("/api/prices/999", json={"price": "1"}).status_code == 404

    def test_refresh_skips_non_finite_samples(self, temp_db, products, fake_provider):
        app = create_app(provider=fake_provider({1: ["NaN", "Infinity", "-4", 100]}))
        app.config["TESTING"] = True
        resp = app.test_client().post("/api/prices/1/refresh")
        assert resp.status_code == 200
        assert Decimal(resp.get_json()["price"]) == Decimal("100.00")

    def test_refresh_unknown_product(self, client):
        assert client.post("/api/prices/999/refresh").status_code == 404

    def test_refresh_without_samples_is_502(self, client):
        assert client.post("/api/prices/4/refresh").status_code == 502

    def test_bad_days(self, client):
        assert client.get("/api/prices/1/history?days=-1").status_code == 400

    def test_refresh_collection(self, client, limiter):
        acquire(client, product_id=1)
        acquire(client, product_id=2, unit_cost="5")
        resp = client.post("/api/collection/ash/refresh-prices")
        data = resp.get_json()
        assert data["updated"] == 2
        assert data["persisted"] == 2
        assert limiter.waits == 2
