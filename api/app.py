"""
Flask API for collection valuation and trade settlement.
Run from project root: flask --app api.app run  (or python -m api.app)
"""
from __future__ import annotations

from datetime import datetime
from threading import Event

import structlog
from flask import Flask, jsonify, request

from collection import history
from collection.errors import (
    ConcurrencyConflict,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from collection.grouping import group_for_display
from collection.manager import (
    add_lot,
    get_collection_stats,
    get_ledger_balance,
    get_lots,
    get_portfolio_summary,
    get_price_alerts,
    remove_lot,
)
from collection.models import grading_from_fields
from collection.trades import get_trade, list_trades, request_from_json, settle
from config import configure_logging, get_settings
from db.connection import borrow, init_db
from db.queries import get_product
from market.ebay import EbayClient
from market.prices import QuoteKey, get_current_quotes, get_quote_history
from market.rate_limit import TokenBucket
from market.refresh import refresh_collection, refresh_variant, save_manual_quote

log = structlog.get_logger(__name__)


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _parse_time(value, field: str):
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp") from e


def _parse_days(value):
    if value in (None, ""):
        return None
    try:
        days = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("days must be an integer") from e
    if days <= 0:
        raise ValidationError("days must be positive")
    return days


def create_app(provider=None) -> Flask:
    """
    Build the app. provider overrides the market data source (defaults to an
    EbayClient built from settings on first use).
    """
    settings = get_settings()
    configure_logging(settings)
    init_db()

    app = Flask(__name__)
    app.config["MARKET_PROVIDER"] = provider

    def market_provider():
        if app.config.get("MARKET_PROVIDER") is None:
            app.config["MARKET_PROVIDER"] = EbayClient.from_settings(settings)
        return app.config["MARKET_PROVIDER"]

    # ===== Error mapping =====

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return _error(str(e), 404)

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return _error(str(e), 400)

    @app.errorhandler(ConcurrencyConflict)
    def handle_conflict(e):
        log.warning("request_conflict", path=request.path, error=str(e))
        return _error(str(e), 409)

    @app.errorhandler(PersistenceError)
    def handle_persistence(e):
        log.error("request_persistence_failed", path=request.path, error=str(e))
        return _error("storage failure; no changes were applied", 500)

    @app.route("/api/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    # ===== Collection Endpoints =====

    @app.route("/api/collection/<user_id>", methods=["GET"])
    def get_user_collection(user_id: str):
        """GET /api/collection/<user_id> - lots, grouped valuations and summary."""
        lots = get_lots(user_id)
        quotes = get_current_quotes(lot.quote_key for lot in lots)
        groups = group_for_display(lots, quotes)
        return jsonify({
            "user_id": user_id,
            "lots": [lot.to_dict() for lot in lots],
            "groups": [g.to_dict() for g in groups],
            "summary": get_portfolio_summary(user_id),
            "count": len(lots),
        })

    @app.route("/api/collection/<user_id>", methods=["POST"])
    def add_to_collection_endpoint(user_id: str):
        """POST /api/collection/<user_id> - Acquire units of a product.
        Body: {product_id, quantity=1, unit_cost?, grading_status?, condition?,
               grading_company?, grade?, raw_cost?, grading_cost?}
        """
        data = request.get_json(silent=True) or {}
        product_id = data.get("product_id")
        if product_id is None:
            raise ValidationError("product_id is required")
        try:
            product_id = int(product_id)
        except (TypeError, ValueError) as e:
            raise ValidationError("product_id must be an integer") from e

        grading = grading_from_fields(
            data.get("grading_status"),
            data.get("grading_company"),
            data.get("grade"),
            data.get("condition"),
            data.get("raw_cost"),
            data.get("grading_cost"),
        )
        lot = add_lot(user_id, product_id, grading, data.get("quantity", 1), data.get("unit_cost"))
        return jsonify({
            "success": True,
            "lot": lot.to_dict(),
            "lifetime_earnings": get_ledger_balance(user_id),
        }), 201

    @app.route("/api/collection/<user_id>/lots/<int:lot_id>", methods=["DELETE"])
    def remove_from_collection_endpoint(user_id: str, lot_id: int):
        """DELETE /api/collection/<user_id>/lots/<lot_id> - Remove a lot. Body: {sold_price?, quantity?}"""
        data = request.get_json(silent=True) or {}
        delta = remove_lot(user_id, lot_id, data.get("sold_price"), data.get("quantity"))
        return jsonify({
            "success": True,
            "ledger_delta": delta,
            "lifetime_earnings": get_ledger_balance(user_id),
        })

    @app.route("/api/collection/<user_id>/stats", methods=["GET"])
    def collection_stats_endpoint(user_id: str):
        """GET /api/collection/<user_id>/stats - Collection counts and investment totals."""
        return jsonify({"user_id": user_id, **get_collection_stats(user_id)})

    @app.route("/api/collection/<user_id>/alerts", methods=["GET"])
    def price_alerts_endpoint(user_id: str):
        """GET /api/collection/<user_id>/alerts - Lots whose quote moved past the alert threshold."""
        alerts = get_price_alerts(user_id)
        return jsonify({"user_id": user_id, "alerts": alerts, "count": len(alerts)})

    # ===== Trade Endpoints =====

    @app.route("/api/collection/<user_id>/trades", methods=["POST"])
    def settle_trade_endpoint(user_id: str):
        """POST /api/collection/<user_id>/trades - Settle a trade atomically.
        Body: {traded_away: [{lot_id, quantity, quote?}],
               received: [{product_id, quantity, quote, grading_status?, ...}],
               cash_delta}
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("request body must be a JSON object")
        traded_away, received, cash_delta = request_from_json(data)
        settlement = settle(user_id, traded_away, received, cash_delta)
        return jsonify({
            "success": True,
            "trade": settlement.trade.to_dict(),
            "ledger_delta": settlement.ledger_delta,
            "lifetime_earnings": settlement.ledger_balance,
        }), 201

    @app.route("/api/collection/<user_id>/trades", methods=["GET"])
    def list_trades_endpoint(user_id: str):
        trades = list_trades(user_id)
        return jsonify({"user_id": user_id, "trades": [t.to_dict() for t in trades], "count": len(trades)})

    @app.route("/api/collection/<user_id>/trades/<int:trade_id>", methods=["GET"])
    def get_trade_endpoint(user_id: str, trade_id: int):
        trade = get_trade(user_id, trade_id)
        if trade is None:
            raise NotFoundError(f"trade {trade_id} not found")
        return jsonify(trade.to_dict())

    @app.route("/api/collection/<user_id>/stat-history", methods=["GET"])
    def stat_history_endpoint(user_id: str):
        """GET /api/collection/<user_id>/stat-history?metric=&start=&end= - Metric time series."""
        points = history.query(
            user_id,
            metric=request.args.get("metric") or None,
            start=_parse_time(request.args.get("start"), "start"),
            end=_parse_time(request.args.get("end"), "end"),
        )
        return jsonify({"user_id": user_id, "points": [p.to_dict() for p in points]})

    # ===== Price Endpoints =====

    def _quote_key(product_id: int) -> QuoteKey:
        return QuoteKey.of(
            product_id,
            request.args.get("grading_company"),
            request.args.get("grade"),
            request.args.get("condition"),
        )

    @app.route("/api/prices/<int:product_id>/history", methods=["GET"])
    def price_history_endpoint(product_id: int):
        """GET /api/prices/<product_id>/history?grading_company=&grade=&condition=&days="""
        key = _quote_key(product_id)
        rows = get_quote_history(key, days=_parse_days(request.args.get("days")))
        for row in rows:
            row["recorded_at"] = row["recorded_at"].isoformat()
        return jsonify({"product_id": product_id, "data": rows})

    @app.route("/api/prices/<int:product_id>", methods=["POST"])
    def save_price_endpoint(product_id: int):
        """POST /api/prices/<product_id> - Save a manual quote.
        Body: {price, grading_company?, grade?, condition?, user_id?}
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("request body must be a JSON object")
        key = QuoteKey.of(product_id, data.get("grading_company"), data.get("grade"), data.get("condition"))
        price = save_manual_quote(key, data.get("price"), user_id=data.get("user_id"))
        return jsonify({"success": True, "product_id": product_id, "price": price}), 201

    @app.route("/api/prices/<int:product_id>/refresh", methods=["POST"])
    def refresh_price_endpoint(product_id: int):
        """POST /api/prices/<product_id>/refresh?grading_company=&grade=&condition= - One variant."""
        with borrow() as conn:
            if get_product(conn, product_id) is None:
                raise NotFoundError(f"product {product_id} not found")
        result = refresh_variant(_quote_key(product_id), market_provider(), settings=settings)
        return jsonify(result.to_dict()), 200 if result.ok else 502

    @app.route("/api/collection/<user_id>/refresh-prices", methods=["POST"])
    def refresh_collection_endpoint(user_id: str):
        """POST /api/collection/<user_id>/refresh-prices - Refresh every held variant."""
        limiter = app.config.get("MARKET_LIMITER") or TokenBucket(
            settings.market_requests_per_second, settings.market_burst
        )
        batch = refresh_collection(user_id, market_provider(), limiter=limiter, cancel=Event(), settings=settings)
        return jsonify({
            "user_id": user_id,
            "updated": batch.updated,
            "failed": batch.failed,
            "persisted": batch.persisted,
            "results": [r.to_dict() for r in batch.results],
        })

    return app


if __name__ == "__main__":
    # Run from project root: python -m api.app  (or: flask --app api.app run)
    create_app().run(host="0.0.0.0", port=5000, debug=True)
