import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.core.observability import get_request_id
from stockledger.models.movement import StockMovement
from stockledger.models.product import Product
from stockledger.services.audit_service import log_audit_event
from stockledger.services.errors import DriftDetected, ProductNotFound

logger = logging.getLogger("stockledger.inventory")


@dataclass(frozen=True)
class BalanceReport:
    product_id: str
    initial_stock: int
    total_in: int
    total_out: int
    expected: int
    actual: int
    drift: int
    movement_count: int
    checked_at: datetime

    @property
    def has_drift(self) -> bool:
        return self.drift != 0


def _ledger_sum(movement_type: str):
    return (
        select(func.coalesce(func.sum(StockMovement.quantity), 0))
        .where(StockMovement.product_id == Product.id, StockMovement.type == movement_type)
        .correlate(Product)
        .scalar_subquery()
    )


def _reconciliation_select():
    # One statement, so the stored balance and the ledger sums come from the same snapshot.
    movement_count = (
        select(func.count(StockMovement.id))
        .where(StockMovement.product_id == Product.id)
        .correlate(Product)
        .scalar_subquery()
    )
    return select(
        Product.id,
        Product.initial_stock,
        Product.current_stock,
        _ledger_sum("in").label("total_in"),
        _ledger_sum("out").label("total_out"),
        movement_count.label("movement_count"),
    )


def _build_report(row, checked_at: datetime) -> BalanceReport:
    total_in = int(row.total_in)
    total_out = int(row.total_out)
    expected = int(row.initial_stock) + total_in - total_out
    actual = int(row.current_stock)
    return BalanceReport(
        product_id=row.id,
        initial_stock=int(row.initial_stock),
        total_in=total_in,
        total_out=total_out,
        expected=expected,
        actual=actual,
        drift=actual - expected,
        movement_count=int(row.movement_count),
        checked_at=checked_at,
    )


def _record_drift(
    db: Session,
    reports: Sequence[BalanceReport],
    actor_user_id: str | None,
    *,
    audit: bool = True,
) -> None:
    drifting = [report for report in reports if report.has_drift]
    if not drifting:
        return

    for report in drifting:
        logger.warning(
            json.dumps(
                {
                    "event": "balance.drift_detected",
                    "request_id": get_request_id(),
                    "product_id": report.product_id,
                    "expected": report.expected,
                    "actual": report.actual,
                    "drift": report.drift,
                }
            )
        )
        if not audit:
            continue
        log_audit_event(
            db,
            actor_user_id=actor_user_id,
            action="balance.drift_detected",
            target_type="product",
            target_id=report.product_id,
            metadata_json={
                "expected": report.expected,
                "actual": report.actual,
                "drift": report.drift,
                "movement_count": report.movement_count,
            },
        )
    if audit:
        db.commit()


def verify_balance(
    db: Session,
    product_id: str,
    *,
    actor_user_id: str | None = None,
    audit: bool = True,
) -> BalanceReport:
    """Recomputes a product's balance from its ledger and compares it to the stored value.

    Drift is always logged and never corrected here. With `audit=False` no
    `balance.drift_detected` row is written, so an ad-hoc read leaves the
    audit log alone.
    """
    row = db.execute(_reconciliation_select().where(Product.id == product_id)).one_or_none()
    if row is None:
        raise ProductNotFound(product_id)

    report = _build_report(row, datetime.now(timezone.utc))
    _record_drift(db, [report], actor_user_id, audit=audit)
    return report


def verify_all_balances(db: Session, *, actor_user_id: str | None = None) -> list[BalanceReport]:
    checked_at = datetime.now(timezone.utc)
    rows = db.execute(
        _reconciliation_select().order_by(Product.created_at.asc(), Product.id.asc())
    ).all()
    reports = [_build_report(row, checked_at) for row in rows]
    _record_drift(db, reports, actor_user_id)
    return reports


def ensure_no_drift(reports: Sequence[BalanceReport]) -> None:
    drifts = {report.product_id: report.drift for report in reports if report.has_drift}
    if drifts:
        raise DriftDetected(drifts)
