from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from stockledger.core.id_utils import generate_shortuuid
from stockledger.models.movement import StockMovement
from stockledger.models.product import MAX_STOCK_QUANTITY, Product
from stockledger.services import balance_service
from stockledger.services.balance_service import apply_movement, get_product_balance, stock_status
from stockledger.services.errors import (
    ConcurrencyConflict,
    InsufficientStock,
    MovementValidationError,
    ProductNotFound,
)
from stockledger.services.movement_validator import MovementCommand
from stockledger.services.reconciliation_service import verify_balance


def _no_sleep(_seconds: float) -> None:
    return None


def _seed_product(session_local, *, initial_stock: int, sku: str = "SKU-1", min_stock: int = 0) -> str:
    db = session_local()
    try:
        now = datetime.now(timezone.utc)
        product = Product(
            id=generate_shortuuid(),
            name="Widget",
            sku=sku,
            initial_stock=initial_stock,
            current_stock=initial_stock,
            min_stock=min_stock,
            version=1,
            created_at=now,
            updated_at=now,
        )
        db.add(product)
        db.commit()
        return product.id
    finally:
        db.close()


def _command(product_id: str, movement_type: str, quantity: int, reason: str = "Other") -> MovementCommand:
    return MovementCommand(product_id=product_id, type=movement_type, quantity=quantity, reason=reason)


def _movement_count(db, product_id: str) -> int:
    return int(
        db.execute(
            select(func.count(StockMovement.id)).where(StockMovement.product_id == product_id)
        ).scalar_one()
    )


def test_in_then_out_round_trip_restores_balance(test_context):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=10)

    db = session_local()
    try:
        received = apply_movement(db, _command(product_id, "in", 7, "Purchase"), sleep=_no_sleep)
        assert received.new_balance == 17
        assert received.movement.balance_after == 17

        issued = apply_movement(db, _command(product_id, "out", 7, "Sale"), sleep=_no_sleep)
        assert issued.new_balance == 10

        balance = get_product_balance(db, product_id)
        assert balance.current_stock == 10
        assert balance.version == 3
        assert verify_balance(db, product_id).drift == 0
    finally:
        db.close()


def test_out_more_than_available_is_rejected_without_side_effects(test_context):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=5)

    db = session_local()
    try:
        with pytest.raises(InsufficientStock) as exc_info:
            apply_movement(db, _command(product_id, "out", 6, "Sale"), sleep=_no_sleep)
        assert exc_info.value.available == 5
        assert exc_info.value.requested == 6

        balance = get_product_balance(db, product_id)
        assert balance.current_stock == 5
        assert balance.version == 1
        assert _movement_count(db, product_id) == 0
    finally:
        db.close()


def test_out_of_exact_balance_reaches_zero(test_context):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=4)

    db = session_local()
    try:
        applied = apply_movement(db, _command(product_id, "out", 4, "Damaged"), sleep=_no_sleep)
        assert applied.new_balance == 0
        assert get_product_balance(db, product_id).stock_status == "out_of_stock"
    finally:
        db.close()


def test_unknown_product_raises_not_found(test_context):
    _, session_local = test_context
    db = session_local()
    try:
        with pytest.raises(ProductNotFound):
            apply_movement(db, _command("missing-product", "in", 1), sleep=_no_sleep)
        with pytest.raises(ProductNotFound):
            get_product_balance(db, "missing-product")
    finally:
        db.close()


def test_ledger_sum_matches_balance_after_mixed_sequence(test_context):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=3)

    db = session_local()
    try:
        steps = [("in", 10), ("out", 4), ("in", 1), ("out", 9), ("in", 25), ("out", 2)]
        expected = 3
        for movement_type, quantity in steps:
            applied = apply_movement(db, _command(product_id, movement_type, quantity), sleep=_no_sleep)
            expected += quantity if movement_type == "in" else -quantity
            assert applied.new_balance == expected

        report = verify_balance(db, product_id)
        assert report.expected == report.actual == expected == 24
        assert report.total_in == 36
        assert report.total_out == 15
        assert report.movement_count == len(steps)
    finally:
        db.close()


def test_lost_race_retries_and_rejects_against_fresh_balance(file_session_local, monkeypatch):
    """Two out(4) against a balance of 6: exactly one commits, the other sees 2 and is rejected."""
    product_id = _seed_product(file_session_local, initial_stock=6)
    original_read = balance_service._read_product
    state = {"interleaved": False}

    def read_then_let_competitor_commit(db, pid):
        product = original_read(db, pid)
        if not state["interleaved"]:
            state["interleaved"] = True
            competitor = file_session_local()
            try:
                apply_movement(competitor, _command(pid, "out", 4, "Sale"), sleep=_no_sleep)
            finally:
                competitor.close()
        return product

    monkeypatch.setattr(balance_service, "_read_product", read_then_let_competitor_commit)

    db = file_session_local()
    try:
        with pytest.raises(InsufficientStock) as exc_info:
            apply_movement(db, _command(product_id, "out", 4, "Sale"), sleep=_no_sleep)
        assert exc_info.value.available == 2
    finally:
        db.close()

    check = file_session_local()
    try:
        product = check.get(Product, product_id)
        assert product.current_stock == 2
        assert product.version == 2
        assert _movement_count(check, product_id) == 1
        assert verify_balance(check, product_id).drift == 0
    finally:
        check.close()


def test_lost_race_retry_commits_when_stock_still_suffices(file_session_local, monkeypatch):
    product_id = _seed_product(file_session_local, initial_stock=10)
    original_read = balance_service._read_product
    state = {"interleaved": False}
    delays: list[float] = []

    def read_then_let_competitor_commit(db, pid):
        product = original_read(db, pid)
        if not state["interleaved"]:
            state["interleaved"] = True
            competitor = file_session_local()
            try:
                apply_movement(competitor, _command(pid, "in", 5, "Purchase"), sleep=_no_sleep)
            finally:
                competitor.close()
        return product

    monkeypatch.setattr(balance_service, "_read_product", read_then_let_competitor_commit)

    db = file_session_local()
    try:
        applied = apply_movement(db, _command(product_id, "out", 4, "Sale"), sleep=delays.append)
        assert applied.new_balance == 11
    finally:
        db.close()

    assert len(delays) == 1

    check = file_session_local()
    try:
        product = check.get(Product, product_id)
        assert product.current_stock == 11
        assert product.version == 3
        assert _movement_count(check, product_id) == 2
    finally:
        check.close()


def test_conflict_exhaustion_raises_and_persists_nothing(test_context, monkeypatch):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=8)
    monkeypatch.setattr(balance_service, "_compare_and_set_stock", lambda *args, **kwargs: False)
    delays: list[float] = []

    db = session_local()
    try:
        with pytest.raises(ConcurrencyConflict) as exc_info:
            apply_movement(
                db,
                _command(product_id, "in", 3, "Purchase"),
                max_attempts=3,
                sleep=delays.append,
            )
        assert exc_info.value.attempts == 3
        assert len(delays) == 2
        assert all(delay >= 0 for delay in delays)

        balance = get_product_balance(db, product_id)
        assert balance.current_stock == 8
        assert balance.version == 1
        assert _movement_count(db, product_id) == 0
    finally:
        db.close()


def test_backoff_is_bounded_by_configured_ceiling(monkeypatch):
    monkeypatch.setattr(balance_service.settings, "movement_retry_base_delay_ms", 20)
    monkeypatch.setattr(balance_service.settings, "movement_retry_max_delay_ms", 100)

    for attempt in range(1, 8):
        delay = balance_service._backoff_seconds(attempt)
        assert 0 <= delay <= min(0.1, 0.02 * (2 ** (attempt - 1)))


@pytest.mark.parametrize(
    ("current_stock", "min_stock", "max_stock", "expected"),
    [
        (0, 5, None, "out_of_stock"),
        (5, 5, None, "low"),
        (6, 5, None, "normal"),
        (51, 5, 50, "over"),
        (50, 5, 50, "normal"),
    ],
)
def test_stock_status(current_stock, min_stock, max_stock, expected):
    assert stock_status(current_stock=current_stock, min_stock=min_stock, max_stock=max_stock) == expected


def test_receipt_past_stock_ceiling_is_rejected_before_any_write(test_context):
    _, session_local = test_context
    product_id = _seed_product(session_local, initial_stock=5)

    db = session_local()
    try:
        filled = apply_movement(db, _command(product_id, "in", MAX_STOCK_QUANTITY - 5), sleep=_no_sleep)
        assert filled.new_balance == MAX_STOCK_QUANTITY

        with pytest.raises(MovementValidationError) as exc_info:
            apply_movement(db, _command(product_id, "in", 1), sleep=_no_sleep)
        assert [issue.field for issue in exc_info.value.issues] == ["quantity"]

        balance = get_product_balance(db, product_id)
        assert balance.current_stock == MAX_STOCK_QUANTITY
        assert balance.version == 2
        assert _movement_count(db, product_id) == 1
    finally:
        db.close()
