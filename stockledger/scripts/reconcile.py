"""
Verify stored product balances against the movement ledger.

Run once (exit code 1 when any product drifts):
  python -m stockledger.scripts.reconcile

Check a single product, or keep checking on an interval:
  python -m stockledger.scripts.reconcile --product-id <id>
  python -m stockledger.scripts.reconcile --interval 3600 --purge-idempotency

Interval mode runs until interrupted (Ctrl-C) and exits with the worst code seen.
Drift is reported and audited, never corrected.
"""

import argparse
import json
import logging
import time
from collections.abc import Callable

from sqlalchemy.orm import Session

from stockledger.core.config import settings
from stockledger.core.observability import setup_observability
from stockledger.services.errors import DriftDetected, ProductNotFound
from stockledger.services.idempotency_service import purge_expired_idempotency_keys
from stockledger.services.reconciliation_service import (
    ensure_no_drift,
    verify_all_balances,
    verify_balance,
)

logger = logging.getLogger("stockledger.inventory")


def run_once(
    session_factory: Callable[[], Session],
    *,
    product_id: str | None = None,
    purge_idempotency: bool = False,
) -> int:
    db = session_factory()
    try:
        if product_id:
            reports = [verify_balance(db, product_id)]
        else:
            reports = verify_all_balances(db)

        purged = purge_expired_idempotency_keys(db) if purge_idempotency else 0
        logger.info(
            json.dumps(
                {
                    "event": "reconciliation.completed",
                    "products_checked": len(reports),
                    "drift_count": sum(1 for report in reports if report.has_drift),
                    "idempotency_keys_purged": purged,
                }
            )
        )
        ensure_no_drift(reports)
    except DriftDetected as exc:
        logger.error(json.dumps({"event": "reconciliation.failed", "drifts": exc.drifts}))
        return 1
    except ProductNotFound as exc:
        logger.error(json.dumps({"event": "reconciliation.failed", "product_id": exc.product_id, "error": str(exc)}))
        return 2
    finally:
        db.close()
    return 0


def main(
    argv: list[str] | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    parser = argparse.ArgumentParser(description="Verify product balances against the stock ledger.")
    parser.add_argument("--product-id", default=None, help="Check only this product")
    parser.add_argument(
        "--interval",
        type=int,
        nargs="?",
        const=settings.reconciliation_interval_seconds,
        default=None,
        help="Repeat every N seconds (bare flag uses RECONCILIATION_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--purge-idempotency",
        action="store_true",
        help="Also delete idempotency keys past their retention window",
    )
    args = parser.parse_args(argv)

    setup_observability()
    if session_factory is None:
        from stockledger.db.session import SessionLocal

        session_factory = SessionLocal

    if not args.interval:
        return run_once(
            session_factory,
            product_id=args.product_id,
            purge_idempotency=args.purge_idempotency,
        )

    exit_code = 0
    try:
        while True:
            exit_code = max(
                exit_code,
                run_once(
                    session_factory,
                    product_id=args.product_id,
                    purge_idempotency=args.purge_idempotency,
                ),
            )
            sleep(args.interval)
    except KeyboardInterrupt:
        logger.info(json.dumps({"event": "reconciliation.stopped", "exit_code": exit_code}))
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
