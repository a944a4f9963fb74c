import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.core.config import settings
from stockledger.core.id_utils import generate_shortuuid
from stockledger.core.observability import get_request_id
from stockledger.models.idempotency import MovementIdempotencyKey
from stockledger.models.movement import StockMovement
from stockledger.services.balance_service import apply_movement
from stockledger.services.errors import IdempotencyKeyConflict
from stockledger.services.movement_validator import MovementCommand

logger = logging.getLogger("stockledger.inventory")


@dataclass(frozen=True)
class MovementResult:
    movement: StockMovement
    new_balance: int
    replayed: bool = False


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def movement_request_hash(command: MovementCommand) -> str:
    fingerprint = {
        "product_id": command.product_id,
        "type": command.type,
        "quantity": command.quantity,
        "reason": command.reason,
        "reference": command.reference,
        "notes": command.notes,
        "reversal_of_id": command.reversal_of_id,
    }
    return hashlib.sha256(json.dumps(fingerprint, sort_keys=True).encode("utf-8")).hexdigest()


def _find_key(db: Session, *, product_id: str, idempotency_key: str) -> MovementIdempotencyKey | None:
    return db.execute(
        select(MovementIdempotencyKey)
        .where(
            MovementIdempotencyKey.product_id == product_id,
            MovementIdempotencyKey.idempotency_key == idempotency_key,
        )
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _replay(db: Session, record: MovementIdempotencyKey, command: MovementCommand) -> MovementResult:
    if record.request_hash != movement_request_hash(command):
        raise IdempotencyKeyConflict(record.idempotency_key)

    movement = db.get(StockMovement, record.movement_id)
    logger.info(
        json.dumps(
            {
                "event": "movement.replayed",
                "request_id": get_request_id(),
                "product_id": command.product_id,
                "movement_id": record.movement_id,
            }
        )
    )
    return MovementResult(movement=movement, new_balance=movement.balance_after, replayed=True)


def create_movement(
    db: Session,
    command: MovementCommand,
    *,
    actor_user_id: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> MovementResult:
    """Applies a movement at most once per (product, idempotency key) within the retention window."""
    if not command.idempotency_key:
        applied = apply_movement(db, command, actor_user_id=actor_user_id, sleep=sleep)
        return MovementResult(movement=applied.movement, new_balance=applied.new_balance)

    now = datetime.now(timezone.utc)
    record = _find_key(db, product_id=command.product_id, idempotency_key=command.idempotency_key)
    if record is not None:
        if _as_utc(record.expires_at) > now:
            return _replay(db, record, command)
        db.delete(record)
        db.commit()

    fingerprint = movement_request_hash(command)
    expires_at = now + timedelta(hours=settings.idempotency_retention_hours)

    def attach(session: Session, movement: StockMovement) -> None:
        session.add(
            MovementIdempotencyKey(
                id=generate_shortuuid(),
                product_id=command.product_id,
                idempotency_key=command.idempotency_key,
                movement_id=movement.id,
                request_hash=fingerprint,
                expires_at=expires_at,
            )
        )

    try:
        applied = apply_movement(
            db,
            command,
            actor_user_id=actor_user_id,
            attach=attach,
            sleep=sleep,
        )
    except IntegrityError:
        # A duplicate submission committed the same key first.
        record = _find_key(db, product_id=command.product_id, idempotency_key=command.idempotency_key)
        if record is None:
            raise
        return _replay(db, record, command)

    return MovementResult(movement=applied.movement, new_balance=applied.new_balance)


def purge_expired_idempotency_keys(db: Session, *, now: datetime | None = None) -> int:
    cutoff = now or datetime.now(timezone.utc)
    result = db.execute(
        delete(MovementIdempotencyKey)
        .where(MovementIdempotencyKey.expires_at <= cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)
