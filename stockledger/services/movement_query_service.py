from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from stockledger.models.movement import StockMovement
from stockledger.models.product import Product
from stockledger.services.errors import MovementNotFound


@dataclass(frozen=True)
class MovementFilters:
    product_id: str | None = None
    type: str | None = None
    reason: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None


@dataclass(frozen=True)
class MovementRow:
    movement: StockMovement
    product_name: str
    product_sku: str


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _apply_filters(stmt: Select, filters: MovementFilters) -> Select:
    if filters.product_id:
        stmt = stmt.where(StockMovement.product_id == filters.product_id)
    if filters.type:
        stmt = stmt.where(StockMovement.type == filters.type)
    if filters.reason:
        stmt = stmt.where(StockMovement.reason == filters.reason)
    if filters.date_from:
        stmt = stmt.where(StockMovement.created_at >= _as_utc(filters.date_from))
    if filters.date_to:
        stmt = stmt.where(StockMovement.created_at <= _as_utc(filters.date_to))
    if filters.search:
        term = filters.search.strip().lower()
        if term:
            stmt = stmt.where(
                or_(
                    func.lower(Product.name).contains(term, autoescape=True),
                    func.lower(Product.sku).contains(term, autoescape=True),
                    func.lower(StockMovement.reference).contains(term, autoescape=True),
                )
            )
    return stmt


def list_movements(
    db: Session,
    filters: MovementFilters,
    *,
    limit: int = 50,
    offset: int = 0,
    sort: str = "desc",
) -> tuple[list[MovementRow], int]:
    base = select(StockMovement).join(Product, Product.id == StockMovement.product_id)
    count_stmt = _apply_filters(
        select(func.count(StockMovement.id)).join(Product, Product.id == StockMovement.product_id),
        filters,
    )
    total = int(db.execute(count_stmt).scalar_one())

    if sort == "asc":
        ordering = (StockMovement.created_at.asc(), StockMovement.id.asc())
    else:
        ordering = (StockMovement.created_at.desc(), StockMovement.id.desc())

    stmt = (
        _apply_filters(base.add_columns(Product.name, Product.sku), filters)
        .order_by(*ordering)
        .offset(offset)
        .limit(limit)
    )
    rows = [
        MovementRow(movement=movement, product_name=name, product_sku=sku)
        for movement, name, sku in db.execute(stmt).all()
    ]
    return rows, total


def get_movement(db: Session, movement_id: str) -> MovementRow:
    row = db.execute(
        select(StockMovement, Product.name, Product.sku)
        .join(Product, Product.id == StockMovement.product_id)
        .where(StockMovement.id == movement_id)
    ).one_or_none()
    if row is None:
        raise MovementNotFound(movement_id)
    movement, name, sku = row
    return MovementRow(movement=movement, product_name=name, product_sku=sku)
