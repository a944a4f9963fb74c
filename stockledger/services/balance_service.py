import json
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from stockledger.core.config import settings
from stockledger.core.id_utils import generate_shortuuid
from stockledger.core.observability import get_request_id
from stockledger.models.movement import StockMovement
from stockledger.models.product import MAX_STOCK_QUANTITY, Product
from stockledger.services.errors import (
    ConcurrencyConflict,
    InsufficientStock,
    MovementValidationError,
    ProductNotFound,
    ValidationIssue,
)
from stockledger.services.movement_validator import MovementCommand

logger = logging.getLogger("stockledger.inventory")

AttachHook = Callable[[Session, StockMovement], None]


@dataclass(frozen=True)
class AppliedMovement:
    movement: StockMovement
    new_balance: int


@dataclass(frozen=True)
class ProductBalance:
    product_id: str
    current_stock: int
    version: int
    min_stock: int
    max_stock: int | None
    stock_status: str


def stock_status(*, current_stock: int, min_stock: int, max_stock: int | None) -> str:
    if current_stock <= 0:
        return "out_of_stock"
    if current_stock <= min_stock:
        return "low"
    if max_stock is not None and current_stock > max_stock:
        return "over"
    return "normal"


def _log(level: int, event: str, command: MovementCommand, **fields) -> None:
    logger.log(
        level,
        json.dumps(
            {
                "event": event,
                "request_id": get_request_id(),
                "product_id": command.product_id,
                "type": command.type,
                "quantity": command.quantity,
                **fields,
            }
        ),
    )


def _backoff_seconds(attempt: int) -> float:
    """Full-jitter exponential backoff for the given 1-based attempt."""
    ceiling_ms = min(
        settings.movement_retry_max_delay_ms,
        settings.movement_retry_base_delay_ms * (2 ** (attempt - 1)),
    )
    return random.uniform(0, ceiling_ms) / 1000


def _read_product(db: Session, product_id: str) -> Product | None:
    # populate_existing: an earlier read in this session must not mask a newer commit.
    return db.execute(
        select(Product)
        .where(Product.id == product_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _compare_and_set_stock(
    db: Session,
    *,
    product_id: str,
    read_version: int,
    new_stock: int,
) -> bool:
    result = db.execute(
        update(Product)
        .where(Product.id == product_id, Product.version == read_version)
        .values(current_stock=new_stock, version=read_version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def apply_movement(
    db: Session,
    command: MovementCommand,
    *,
    actor_user_id: str | None = None,
    attach: AttachHook | None = None,
    max_attempts: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AppliedMovement:
    """Commits one movement and the matching balance change atomically.

    The product row is re-read on every attempt and written back only if its
    `version` is still the one that was read. A lost race rolls the whole
    attempt back (movement row included) and retries with backoff.

    The session must not carry unrelated pending changes: every attempt ends
    in a commit or a rollback.
    """
    attempts = max_attempts or settings.movement_max_attempts

    for attempt in range(1, attempts + 1):
        try:
            product = _read_product(db, command.product_id)
            if product is None:
                raise ProductNotFound(command.product_id)

            read_version = product.version
            current_stock = product.current_stock
            if command.type == "out" and command.quantity > current_stock:
                raise InsufficientStock(
                    product_id=command.product_id,
                    available=current_stock,
                    requested=command.quantity,
                )
            new_stock = current_stock + command.qty_delta
            if new_stock > MAX_STOCK_QUANTITY:
                raise MovementValidationError(
                    [
                        ValidationIssue(
                            "quantity",
                            f"quantity would raise stock above {MAX_STOCK_QUANTITY}",
                            "less_than_equal",
                        )
                    ]
                )

            movement = StockMovement(
                id=generate_shortuuid(),
                product_id=command.product_id,
                type=command.type,
                quantity=command.quantity,
                reason=command.reason,
                reference=command.reference,
                notes=command.notes,
                balance_after=new_stock,
                reversal_of_id=command.reversal_of_id,
                idempotency_key=command.idempotency_key,
                created_by_user_id=actor_user_id,
                created_at=datetime.now(timezone.utc),
            )
            db.add(movement)
            db.flush()
            if attach is not None:
                attach(db, movement)
                db.flush()

            if not _compare_and_set_stock(
                db,
                product_id=command.product_id,
                read_version=read_version,
                new_stock=new_stock,
            ):
                db.rollback()
                _log(
                    logging.INFO,
                    "movement.conflict_retry",
                    command,
                    attempt=attempt,
                    read_version=read_version,
                )
                if attempt < attempts:
                    sleep(_backoff_seconds(attempt))
                continue

            db.commit()
        except InsufficientStock as exc:
            db.rollback()
            _log(logging.INFO, "movement.rejected", command, available=exc.available)
            raise
        except MovementValidationError:
            db.rollback()
            _log(logging.INFO, "movement.rejected", command, available=current_stock)
            raise
        except Exception:
            db.rollback()
            raise

        _log(
            logging.INFO,
            "movement.committed",
            command,
            movement_id=movement.id,
            balance_after=new_stock,
            version=read_version + 1,
            attempt=attempt,
        )
        return AppliedMovement(movement=movement, new_balance=new_stock)

    _log(logging.WARNING, "movement.conflict_exhausted", command, attempts=attempts)
    raise ConcurrencyConflict(product_id=command.product_id, attempts=attempts)


def get_product_balance(db: Session, product_id: str) -> ProductBalance:
    product = _read_product(db, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return ProductBalance(
        product_id=product.id,
        current_stock=product.current_stock,
        version=product.version,
        min_stock=product.min_stock,
        max_stock=product.max_stock,
        stock_status=stock_status(
            current_stock=product.current_stock,
            min_stock=product.min_stock,
            max_stock=product.max_stock,
        ),
    )
