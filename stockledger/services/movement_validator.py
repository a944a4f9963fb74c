from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.models.movement import MOVEMENT_REASONS, MOVEMENT_TYPES
from stockledger.models.product import MAX_STOCK_QUANTITY, Product
from stockledger.services.errors import MovementValidationError, ProductNotFound, ValidationIssue

MAX_REFERENCE_LENGTH = 120
MAX_NOTES_LENGTH = 500
MAX_IDEMPOTENCY_KEY_LENGTH = 120

_REASON_LOOKUP = {reason.lower(): reason for reason in MOVEMENT_REASONS}


@dataclass(frozen=True)
class MovementCommand:
    product_id: str
    type: str
    quantity: int
    reason: str
    reference: str | None = None
    notes: str | None = None
    idempotency_key: str | None = None
    reversal_of_id: str | None = None

    @property
    def qty_delta(self) -> int:
        return self.quantity if self.type == "in" else -self.quantity


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def canonical_reason(value: str | None) -> str | None:
    if not value:
        return None
    return _REASON_LOOKUP.get(value.strip().lower())


def _check_quantity(value: Any, issues: list[ValidationIssue]) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        issues.append(ValidationIssue("quantity", "quantity is required", "missing"))
        return None
    # bool is an int subclass; True must not pass as 1
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.append(ValidationIssue("quantity", "quantity must be an integer", "int_type"))
        return None
    if isinstance(value, float) and not value.is_integer():
        issues.append(ValidationIssue("quantity", "quantity must be a whole number", "int_type"))
        return None
    quantity = int(value)
    if quantity <= 0:
        issues.append(ValidationIssue("quantity", "quantity must be greater than 0", "greater_than"))
        return None
    if quantity > MAX_STOCK_QUANTITY:
        issues.append(
            ValidationIssue("quantity", f"quantity must be at most {MAX_STOCK_QUANTITY}", "less_than_equal")
        )
        return None
    return quantity


def _check_optional_text(
    payload: Mapping[str, Any],
    field: str,
    max_length: int,
    issues: list[ValidationIssue],
) -> str | None:
    value = _clean_text(payload.get(field))
    if value is not None and len(value) > max_length:
        issues.append(
            ValidationIssue(field, f"{field} must be at most {max_length} characters", "string_too_long")
        )
        return None
    return value


def validate_movement_fields(payload: Mapping[str, Any]) -> MovementCommand:
    """Checks shape and semantics of a movement submission without touching the database.

    Every violation is collected so the caller can show all of them at once.
    """
    issues: list[ValidationIssue] = []

    product_id = _clean_text(payload.get("product_id"))
    if not product_id:
        issues.append(ValidationIssue("product_id", "product_id is required", "missing"))

    movement_type = payload.get("type")
    if movement_type is None or movement_type == "":
        issues.append(ValidationIssue("type", "type is required", "missing"))
    elif movement_type not in MOVEMENT_TYPES:
        issues.append(ValidationIssue("type", "type must be 'in' or 'out'", "enum"))

    quantity = _check_quantity(payload.get("quantity"), issues)

    raw_reason = _clean_text(payload.get("reason"))
    reason = None
    if not raw_reason:
        issues.append(ValidationIssue("reason", "reason is required", "missing"))
    else:
        reason = _REASON_LOOKUP.get(raw_reason.lower())
        if reason is None:
            allowed = ", ".join(MOVEMENT_REASONS)
            issues.append(ValidationIssue("reason", f"reason must be one of: {allowed}", "enum"))

    reference = _check_optional_text(payload, "reference", MAX_REFERENCE_LENGTH, issues)
    notes = _check_optional_text(payload, "notes", MAX_NOTES_LENGTH, issues)
    idempotency_key = _check_optional_text(
        payload, "idempotency_key", MAX_IDEMPOTENCY_KEY_LENGTH, issues
    )

    if issues:
        raise MovementValidationError(issues)

    return MovementCommand(
        product_id=product_id,
        type=movement_type,
        quantity=quantity,
        reason=reason,
        reference=reference,
        notes=notes,
        idempotency_key=idempotency_key,
    )


def validate_movement(db: Session, payload: Mapping[str, Any]) -> MovementCommand:
    command = validate_movement_fields(payload)

    # Quick feedback only; the balance service re-reads the product in its transaction.
    exists = db.execute(
        select(Product.id).where(Product.id == command.product_id)
    ).scalar_one_or_none()
    if exists is None:
        raise ProductNotFound(command.product_id)
    return command
