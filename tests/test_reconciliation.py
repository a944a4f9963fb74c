from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from stockledger.core.id_utils import generate_shortuuid
from stockledger.models.audit_log import AuditLog
from stockledger.models.idempotency import MovementIdempotencyKey
from stockledger.models.product import Product
from stockledger.scripts import reconcile
from stockledger.services.errors import DriftDetected
from stockledger.services.idempotency_service import create_movement, purge_expired_idempotency_keys
from stockledger.services.movement_validator import MovementCommand
from stockledger.services.reconciliation_service import (
    ensure_no_drift,
    verify_all_balances,
    verify_balance,
)


def _seed_product(db, *, sku: str, initial_stock: int) -> str:
    now = datetime.now(timezone.utc)
    product = Product(
        id=generate_shortuuid(),
        name=f"Item {sku}",
        sku=sku,
        initial_stock=initial_stock,
        current_stock=initial_stock,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(product)
    db.commit()
    return product.id


def _move(db, product_id: str, movement_type: str, quantity: int, *, key: str | None = None):
    return create_movement(
        db,
        MovementCommand(
            product_id=product_id,
            type=movement_type,
            quantity=quantity,
            reason="Other",
            idempotency_key=key,
        ),
        sleep=lambda _seconds: None,
    )


def _tamper(db, product_id: str, current_stock: int) -> None:
    db.execute(update(Product).where(Product.id == product_id).values(current_stock=current_stock))
    db.commit()


def test_consistent_ledger_reports_no_drift(test_context):
    _, session_local = test_context
    db = session_local()
    try:
        product_id = _seed_product(db, sku="A", initial_stock=100)
        _move(db, product_id, "in", 50)
        _move(db, product_id, "out", 30)

        report = verify_balance(db, product_id)
        assert report.initial_stock == 100
        assert report.total_in == 50
        assert report.total_out == 30
        assert report.expected == 120
        assert report.has_drift is False
        ensure_no_drift([report])
    finally:
        db.close()


def test_manual_drift_is_detected_audited_and_not_healed(test_context):
    _, session_local = test_context
    db = session_local()
    try:
        healthy_id = _seed_product(db, sku="A", initial_stock=10)
        drifting_id = _seed_product(db, sku="B", initial_stock=10)
        _move(db, drifting_id, "out", 3)
        _tamper(db, drifting_id, 9)

        reports = verify_all_balances(db)
        by_product = {report.product_id: report for report in reports}
        assert by_product[healthy_id].drift == 0
        assert by_product[drifting_id].expected == 7
        assert by_product[drifting_id].actual == 9
        assert by_product[drifting_id].drift == 2

        with pytest.raises(DriftDetected) as exc_info:
            ensure_no_drift(reports)
        assert exc_info.value.drifts == {drifting_id: 2}

        assert db.get(Product, drifting_id).current_stock == 9
        audit = db.execute(
            select(AuditLog).where(AuditLog.action == "balance.drift_detected")
        ).scalar_one()
        assert audit.target_id == drifting_id
        assert audit.actor_user_id is None
        assert audit.metadata_json["drift"] == 2
    finally:
        db.close()


def test_reconciliation_endpoint_lists_drift(test_context):
    client, session_local = test_context
    token = client.post(
        "/auth/register",
        json={"email": "admin@example.com", "full_name": "Admin", "password": "password123"},
    ).json()["access_token"]

    db = session_local()
    try:
        product_id = _seed_product(db, sku="A", initial_stock=5)
        _tamper(db, product_id, 4)
    finally:
        db.close()

    res = client.get("/inventory/reconciliation", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["products_checked"] == 1
    assert body["drift_count"] == 1
    assert body["items"][0]["drift"] == -1


def test_reconcile_job_exit_codes(test_context):
    _, session_local = test_context
    db = session_local()
    try:
        product_id = _seed_product(db, sku="A", initial_stock=5)
    finally:
        db.close()

    assert reconcile.main([], session_factory=session_local) == 0
    assert reconcile.main(["--product-id", "missing"], session_factory=session_local) == 2

    db = session_local()
    try:
        _tamper(db, product_id, 6)
    finally:
        db.close()

    assert reconcile.main(["--product-id", product_id], session_factory=session_local) == 1

    naps: list[float] = []

    def nap_then_stop(seconds: float) -> None:
        naps.append(seconds)
        if len(naps) == 2:
            raise KeyboardInterrupt

    exit_code = reconcile.main(
        ["--interval", "60"],
        session_factory=session_local,
        sleep=nap_then_stop,
    )
    assert exit_code == 1
    assert naps == [60, 60]


def test_expired_idempotency_keys_are_purged(test_context):
    _, session_local = test_context
    db = session_local()
    try:
        product_id = _seed_product(db, sku="A", initial_stock=5)
        _move(db, product_id, "in", 1, key="old")
        _move(db, product_id, "in", 1, key="fresh")

        db.execute(
            update(MovementIdempotencyKey)
            .where(MovementIdempotencyKey.idempotency_key == "old")
            .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        )
        db.commit()

        assert purge_expired_idempotency_keys(db) == 1
        remaining = db.execute(select(MovementIdempotencyKey.idempotency_key)).scalars().all()
        assert remaining == ["fresh"]

        # Past retention the key no longer deduplicates.
        again = _move(db, product_id, "in", 1, key="old")
        assert again.replayed is False
        assert again.new_balance == 8
    finally:
        db.close()


def test_product_reconciliation_reads_do_not_write_audit_rows(test_context):
    client, session_local = test_context
    token = client.post(
        "/auth/register",
        json={"email": "admin@example.com", "full_name": "Admin", "password": "password123"},
    ).json()["access_token"]

    db = session_local()
    try:
        product_id = _seed_product(db, sku="A", initial_stock=5)
        _tamper(db, product_id, 7)
    finally:
        db.close()

    for _ in range(3):
        res = client.get(
            f"/products/{product_id}/reconciliation",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert res.status_code == 200, res.text
        assert res.json()["drift"] == 2

    def drift_audits() -> int:
        db = session_local()
        try:
            return len(
                db.execute(
                    select(AuditLog.id).where(AuditLog.action == "balance.drift_detected")
                ).all()
            )
        finally:
            db.close()

    assert drift_audits() == 0

    assert reconcile.main(["--product-id", product_id], session_factory=session_local) == 1
    assert drift_audits() == 1
