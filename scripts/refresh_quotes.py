"""
Refresh market quotes for every variant in a user's collection.
Run from project root: python3 scripts/refresh_quotes.py <user_id> [--rate 0.5]
Needs EBAY_CLIENT_ID / EBAY_CLIENT_SECRET in env. Ctrl-C stops after the current variant.
"""
import argparse
import signal
import sys
from pathlib import Path
from threading import Event

# Add project root so packages are importable
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import structlog

from config import configure_logging, get_settings
from db.connection import init_db
from market.ebay import EbayClient
from market.rate_limit import TokenBucket
from market.refresh import refresh_collection

log = structlog.get_logger("scripts.refresh_quotes")


def parse_args(argv=None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Refresh market quotes for a collection.")
    parser.add_argument("user_id", help="collection owner")
    parser.add_argument(
        "--rate",
        type=float,
        default=settings.market_requests_per_second,
        help="provider requests per second (default: %(default)s)",
    )
    parser.add_argument(
        "--burst",
        type=int,
        default=settings.market_burst,
        help="requests allowed back to back (default: %(default)s)",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    init_db()

    if not (settings.ebay_client_id and settings.ebay_client_secret):
        log.error("ebay_credentials_missing")
        return 2

    cancel = Event()
    signal.signal(signal.SIGINT, lambda *_: cancel.set())

    client = EbayClient.from_settings(settings)
    try:
        batch = refresh_collection(
            args.user_id,
            client,
            limiter=TokenBucket(args.rate, args.burst),
            cancel=cancel,
            settings=settings,
        )
    finally:
        client.close()

    for result in batch.results:
        d = result.to_dict()
        label = " ".join(str(v) for v in (d["product_id"], d["grading_company"], d["grade"], d["condition"]) if v)
        if result.ok:
            print(f"  {label}: {d['price']} ({d['sample_count']} samples){'' if result.persisted else ' [not persisted]'}")
        else:
            print(f"  {label}: error {result.error}")
    print(f"Updated {batch.updated}, failed {batch.failed}, persisted {batch.persisted}."
          + (" Cancelled." if batch.cancelled else ""))
    return 0 if batch.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
