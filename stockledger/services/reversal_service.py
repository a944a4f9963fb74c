import time
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.models.movement import StockMovement
from stockledger.services.audit_service import log_audit_event
from stockledger.services.balance_service import AppliedMovement, apply_movement
from stockledger.services.errors import MovementAlreadyReversed, MovementNotFound
from stockledger.services.movement_validator import MovementCommand

REVERSAL_REASON = "Adjustment"


def _existing_reversal_id(db: Session, movement_id: str) -> str | None:
    return db.execute(
        select(StockMovement.id).where(StockMovement.reversal_of_id == movement_id)
    ).scalar_one_or_none()


def reverse_movement(
    db: Session,
    movement_id: str,
    *,
    actor_user_id: str | None,
    notes: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AppliedMovement:
    """Cancels a movement's effect with an opposite compensating movement.

    The original row is left untouched. `reversal_of_id` is unique, so a
    movement can be reversed once even under concurrent requests.
    """
    original = db.get(StockMovement, movement_id)
    if original is None:
        raise MovementNotFound(movement_id)
    if original.reversal_of_id is not None:
        raise MovementAlreadyReversed(movement_id, "A reversal movement cannot be reversed")
    if _existing_reversal_id(db, movement_id) is not None:
        raise MovementAlreadyReversed(movement_id)

    command = MovementCommand(
        product_id=original.product_id,
        type="out" if original.type == "in" else "in",
        quantity=original.quantity,
        reason=REVERSAL_REASON,
        reference=original.reference,
        notes=notes or f"Reversal of movement {original.id}",
        reversal_of_id=original.id,
    )

    def attach(session: Session, movement: StockMovement) -> None:
        log_audit_event(
            session,
            actor_user_id=actor_user_id,
            action="movement.reverse",
            target_type="stock_movement",
            target_id=command.reversal_of_id,
            metadata_json={
                "reversal_movement_id": movement.id,
                "product_id": command.product_id,
                "type": command.type,
                "quantity": command.quantity,
            },
        )

    try:
        return apply_movement(
            db,
            command,
            actor_user_id=actor_user_id,
            attach=attach,
            sleep=sleep,
        )
    except IntegrityError:
        if _existing_reversal_id(db, movement_id) is not None:
            raise MovementAlreadyReversed(movement_id)
        raise
