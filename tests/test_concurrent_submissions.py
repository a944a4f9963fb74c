import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from stockledger.core.id_utils import generate_shortuuid
from stockledger.models.audit_log import AuditLog
from stockledger.models.idempotency import MovementIdempotencyKey
from stockledger.models.movement import StockMovement
from stockledger.models.product import Product
from stockledger.services import idempotency_service, reversal_service
from stockledger.services.balance_service import apply_movement
from stockledger.services.errors import MovementAlreadyReversed
from stockledger.services.idempotency_service import create_movement
from stockledger.services.movement_validator import MovementCommand
from stockledger.services.reversal_service import reverse_movement


def _no_sleep(_seconds: float) -> None:
    return None


def _seed_product(session_local, *, initial_stock: int) -> str:
    db = session_local()
    try:
        now = datetime.now(timezone.utc)
        product = Product(
            id=generate_shortuuid(),
            name="Toner cartridge",
            sku=f"TON-{generate_shortuuid()[:6]}",
            initial_stock=initial_stock,
            current_stock=initial_stock,
            version=1,
            created_at=now,
            updated_at=now,
        )
        db.add(product)
        db.commit()
        return product.id
    finally:
        db.close()


def _sale(product_id: str, quantity: int, key: str | None = None) -> MovementCommand:
    return MovementCommand(
        product_id=product_id,
        type="out",
        quantity=quantity,
        reason="Sale",
        idempotency_key=key,
    )


def _movement_count(db, product_id: str) -> int:
    return int(
        db.execute(
            select(func.count(StockMovement.id)).where(StockMovement.product_id == product_id)
        ).scalar_one()
    )


def test_same_key_from_parallel_submitters_commits_once(file_session_local):
    product_id = _seed_product(file_session_local, initial_stock=10)

    workers = 4
    barrier = threading.Barrier(workers)
    outcomes: list[tuple[bool, int, str]] = []
    failures: list[BaseException] = []
    lock = threading.Lock()

    def submit():
        db = file_session_local()
        try:
            barrier.wait()
            result = create_movement(db, _sale(product_id, 3, key="k1"), sleep=_no_sleep)
            outcome = (result.replayed, result.new_balance, result.movement.id)
            with lock:
                outcomes.append(outcome)
        except Exception as exc:
            with lock:
                failures.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=submit) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert failures == []
    assert sorted(replayed for replayed, _, _ in outcomes) == [False, True, True, True]
    assert {balance for _, balance, _ in outcomes} == {7}
    assert len({movement_id for _, _, movement_id in outcomes}) == 1

    db = file_session_local()
    try:
        assert db.get(Product, product_id).current_stock == 7
        assert _movement_count(db, product_id) == 1
    finally:
        db.close()


def test_duplicate_key_that_loses_insert_race_replays_winner(test_context, monkeypatch):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=10)

    db = session_local()
    try:
        first = create_movement(db, _sale(product_id, 3, key="k1"), sleep=_no_sleep)
        first_id = first.movement.id

        real_find_key = idempotency_service._find_key
        lookups = []

        # The first lookup happens before the winner's commit is visible.
        def stale_then_real(session, **kwargs):
            lookups.append(kwargs["idempotency_key"])
            if len(lookups) == 1:
                return None
            return real_find_key(session, **kwargs)

        monkeypatch.setattr(idempotency_service, "_find_key", stale_then_real)

        second = create_movement(db, _sale(product_id, 3, key="k1"), sleep=_no_sleep)

        assert lookups == ["k1", "k1"]
        assert second.replayed is True
        assert second.movement.id == first_id
        assert second.new_balance == 7
        assert db.get(Product, product_id).current_stock == 7
        assert _movement_count(db, product_id) == 1
    finally:
        db.close()


def test_expired_key_is_released_on_resubmission_without_purge(test_context):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=10)

    db = session_local()
    try:
        first = create_movement(db, _sale(product_id, 2, key="k1"), sleep=_no_sleep)
        first_id = first.movement.id

        db.execute(
            update(MovementIdempotencyKey)
            .where(MovementIdempotencyKey.idempotency_key == "k1")
            .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        )
        db.commit()

        again = create_movement(db, _sale(product_id, 2, key="k1"), sleep=_no_sleep)

        assert again.replayed is False
        assert again.movement.id != first_id
        assert again.new_balance == 6
        assert _movement_count(db, product_id) == 2

        records = db.execute(select(MovementIdempotencyKey)).scalars().all()
        assert len(records) == 1
        assert records[0].movement_id == again.movement.id
        assert records[0].expires_at.replace(tzinfo=timezone.utc) > datetime.now(timezone.utc)
    finally:
        db.close()


def test_second_reversal_insert_is_rejected_by_unique_link(test_context, monkeypatch):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=10)

    db = session_local()
    try:
        original = apply_movement(db, _sale(product_id, 3), sleep=_no_sleep)
        original_id = original.movement.id
        reverse_movement(db, original_id, actor_user_id=None, sleep=_no_sleep)

        real_existing = reversal_service._existing_reversal_id
        checks = []

        # The pre-check runs before the competing reversal commits.
        def missed_then_real(session, movement_id):
            checks.append(movement_id)
            if len(checks) == 1:
                return None
            return real_existing(session, movement_id)

        monkeypatch.setattr(reversal_service, "_existing_reversal_id", missed_then_real)

        with pytest.raises(MovementAlreadyReversed):
            reverse_movement(db, original_id, actor_user_id=None, sleep=_no_sleep)

        assert checks == [original_id, original_id]
        assert db.get(Product, product_id).current_stock == 10
        assert _movement_count(db, product_id) == 2
        reverse_audits = db.execute(
            select(func.count(AuditLog.id)).where(AuditLog.action == "movement.reverse")
        ).scalar_one()
        assert reverse_audits == 1
    finally:
        db.close()
