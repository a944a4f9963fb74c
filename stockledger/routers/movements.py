from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status
from sqlalchemy.orm import Session

from stockledger.core.api_docs import error_responses
from stockledger.core.deps import get_db
from stockledger.core.permissions import require_stock_writer
from stockledger.core.security_current import get_current_user
from stockledger.models.movement import StockMovement
from stockledger.models.user import User
from stockledger.schemas.common import PaginationMeta, SortOrder
from stockledger.schemas.movement import (
    MovementCreateIn,
    MovementCreateOut,
    MovementListOut,
    MovementOut,
    MovementReverseIn,
)
from stockledger.services.errors import MovementValidationError, ValidationIssue
from stockledger.services.idempotency_service import create_movement
from stockledger.services.movement_query_service import (
    MovementFilters,
    get_movement,
    list_movements,
)
from stockledger.services.movement_validator import canonical_reason, validate_movement
from stockledger.services.reversal_service import reverse_movement

router = APIRouter(prefix="/movements", tags=["movements"])
MAX_MOVEMENT_PAGE_SIZE = 200


def _movement_out(
    movement: StockMovement,
    *,
    product_name: str | None = None,
    product_sku: str | None = None,
) -> MovementOut:
    return MovementOut(
        id=movement.id,
        product_id=movement.product_id,
        product_name=product_name,
        product_sku=product_sku,
        type=movement.type,
        quantity=movement.quantity,
        reason=movement.reason,
        reference=movement.reference,
        notes=movement.notes,
        balance_after=movement.balance_after,
        reversal_of_id=movement.reversal_of_id,
        idempotency_key=movement.idempotency_key,
        created_by_user_id=movement.created_by_user_id,
        created_at=movement.created_at,
    )


def _merge_idempotency_key(payload: dict, header_key: str | None) -> dict:
    header_key = header_key.strip() if header_key else None
    if not header_key:
        return payload
    body_key = payload.get("idempotency_key")
    if body_key not in (None, "") and str(body_key).strip() != header_key:
        raise MovementValidationError(
            [
                ValidationIssue(
                    "idempotency_key",
                    "Idempotency-Key header and body idempotency_key differ",
                    "value_error",
                )
            ]
        )
    return {**payload, "idempotency_key": header_key}


@router.post(
    "",
    response_model=MovementCreateOut,
    status_code=status.HTTP_201_CREATED,
    summary="Record a stock movement",
    description=(
        "Validates the movement, appends it to the ledger and updates the product balance "
        "in one transaction. Re-submitting with the same idempotency key returns the "
        "original result with `replayed: true` and status 200."
    ),
    responses={
        200: {"description": "Replay of an earlier submission with the same idempotency key"},
        **error_responses(401, 403, 404, 409, 422, 500),
    },
)
def post_movement(
    payload: MovementCreateIn,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    actor: User = Depends(require_stock_writer),
):
    raw = _merge_idempotency_key(payload.model_dump(), idempotency_key)
    command = validate_movement(db, raw)
    result = create_movement(db, command, actor_user_id=actor.id)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return MovementCreateOut(
        movement=_movement_out(result.movement),
        new_balance=result.new_balance,
        replayed=result.replayed,
    )


@router.get(
    "",
    response_model=MovementListOut,
    summary="List stock movements",
    responses=error_responses(401, 422, 500),
)
def get_movements(
    product_id: Optional[str] = Query(default=None),
    type: Optional[Literal["in", "out"]] = Query(default=None),
    reason: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None, description="Matches product name, SKU or reference"),
    sort: SortOrder = Query(default="desc", description="Order by creation time"),
    limit: int = Query(default=50, ge=1, le=MAX_MOVEMENT_PAGE_SIZE, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    filters = MovementFilters(
        product_id=product_id,
        type=type,
        reason=canonical_reason(reason) or reason,
        date_from=date_from,
        date_to=date_to,
        search=search,
    )
    rows, total = list_movements(db, filters, limit=limit, offset=offset, sort=sort)
    items = [
        _movement_out(row.movement, product_name=row.product_name, product_sku=row.product_sku)
        for row in rows
    ]
    return MovementListOut(
        items=items,
        pagination=PaginationMeta.for_page(
            total=total, limit=limit, offset=offset, count=len(items)
        ),
    )


@router.get(
    "/{movement_id}",
    response_model=MovementOut,
    summary="Get stock movement",
    responses=error_responses(401, 404, 500),
)
def get_movement_by_id(
    movement_id: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    row = get_movement(db, movement_id)
    return _movement_out(row.movement, product_name=row.product_name, product_sku=row.product_sku)


@router.post(
    "/{movement_id}/reverse",
    response_model=MovementCreateOut,
    status_code=status.HTTP_201_CREATED,
    summary="Reverse a stock movement",
    description=(
        "Appends a compensating movement of the opposite type. The original movement "
        "stays in the ledger unchanged. A movement can be reversed once."
    ),
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def post_movement_reversal(
    movement_id: str,
    payload: Optional[MovementReverseIn] = None,
    db: Session = Depends(get_db),
    actor: User = Depends(require_stock_writer),
):
    applied = reverse_movement(
        db,
        movement_id,
        actor_user_id=actor.id,
        notes=payload.notes if payload else None,
    )
    return MovementCreateOut(
        movement=_movement_out(applied.movement),
        new_balance=applied.new_balance,
    )
