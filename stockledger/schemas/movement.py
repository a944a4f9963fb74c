from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stockledger.schemas.common import PaginationMeta


class MovementCreateIn(BaseModel):
    """Loosely typed on purpose: the movement validator reports every rule violation at once."""

    product_id: Any = None
    type: Any = None
    quantity: Any = None
    reason: Any = None
    reference: Any = None
    notes: Any = None
    idempotency_key: Any = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id-here",
                "type": "out",
                "quantity": 30,
                "reason": "Sale",
                "reference": "INV-2026-0042",
                "notes": "Counter sale",
                "idempotency_key": "9b6f7c3e-movement-submit-1",
            }
        }
    )


class MovementReverseIn(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("notes")
    @classmethod
    def normalize_notes(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class MovementOut(BaseModel):
    id: str
    product_id: str
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    type: str
    quantity: int
    reason: str
    reference: Optional[str] = None
    notes: Optional[str] = None
    balance_after: int
    reversal_of_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_by_user_id: Optional[str] = None
    created_at: datetime


class MovementCreateOut(BaseModel):
    movement: MovementOut
    new_balance: int
    replayed: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "movement": {
                    "id": "movement-id",
                    "product_id": "product-id",
                    "type": "out",
                    "quantity": 30,
                    "reason": "Sale",
                    "reference": "INV-2026-0042",
                    "notes": "Counter sale",
                    "balance_after": 120,
                    "reversal_of_id": None,
                    "idempotency_key": "9b6f7c3e-movement-submit-1",
                    "created_by_user_id": "user-id",
                    "created_at": "2026-02-16T10:00:00Z",
                },
                "new_balance": 120,
                "replayed": False,
            }
        }
    )


class MovementListOut(BaseModel):
    items: list[MovementOut]
    pagination: PaginationMeta
