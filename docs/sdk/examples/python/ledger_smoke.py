import os
import sys
import uuid

import requests

from stockledger.client import RefreshingTokenProvider, StockLedgerAPIError, StockLedgerClient

base_url = os.getenv("STOCKLEDGER_BASE_URL", "http://localhost:8000").rstrip("/")
identifier = os.getenv("STOCKLEDGER_USER")
password = os.getenv("STOCKLEDGER_PASSWORD")
product_id = os.getenv("STOCKLEDGER_PRODUCT_ID")

if not (identifier and password and product_id):
    raise RuntimeError("STOCKLEDGER_USER, STOCKLEDGER_PASSWORD and STOCKLEDGER_PRODUCT_ID are required")


def main() -> int:
    client = StockLedgerClient(base_url, RefreshingTokenProvider(base_url, identifier, password))

    before = client.get_product_balance(product_id)
    submit_key = str(uuid.uuid4())
    first = client.create_movement(
        product_id=product_id,
        type="in",
        quantity=1,
        reason="Adjustment",
        notes="ledger smoke test",
        idempotency_key=submit_key,
    )
    # Same key again must not apply twice.
    replay = client.create_movement(
        product_id=product_id,
        type="in",
        quantity=1,
        reason="Adjustment",
        notes="ledger smoke test",
        idempotency_key=submit_key,
    )
    client.reverse_movement(first["movement"]["id"], notes="ledger smoke test cleanup")
    report = client.verify_balance(product_id)

    print(f"Balance before: {before['current_stock']}")
    print(f"Replay flagged: {replay['replayed']}")
    print(f"Drift: {report['drift']}")
    return 0 if replay["replayed"] and report["drift"] == 0 else 1


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except (requests.RequestException, StockLedgerAPIError) as exc:
        print(f"Ledger probe failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
