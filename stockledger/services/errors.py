from dataclasses import dataclass


class StockLedgerError(ValueError):
    code = "bad_request"
    status_code = 400


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    type: str = "value_error"


class MovementValidationError(StockLedgerError):
    code = "validation_error"
    status_code = 422

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        super().__init__("; ".join(f"{issue.field}: {issue.message}" for issue in issues))


class ProductNotFound(StockLedgerError):
    code = "not_found"
    status_code = 404

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product not found")


class MovementNotFound(StockLedgerError):
    code = "not_found"
    status_code = 404

    def __init__(self, movement_id: str):
        self.movement_id = movement_id
        super().__init__("Movement not found")


class InsufficientStock(StockLedgerError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, *, product_id: str, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock: available {available}, requested {requested}"
        )


class ConcurrencyConflict(StockLedgerError):
    code = "concurrency_conflict"
    status_code = 409

    def __init__(self, *, product_id: str, attempts: int):
        self.product_id = product_id
        self.attempts = attempts
        super().__init__(
            f"Product stock changed concurrently; gave up after {attempts} attempts"
        )


class IdempotencyKeyConflict(StockLedgerError):
    code = "idempotency_key_conflict"
    status_code = 409

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__("Idempotency key was already used for a different movement")


class MovementAlreadyReversed(StockLedgerError):
    code = "conflict"
    status_code = 409

    def __init__(self, movement_id: str, detail: str = "Movement has already been reversed"):
        self.movement_id = movement_id
        super().__init__(detail)


class DriftDetected(StockLedgerError):
    code = "drift_detected"
    status_code = 500

    def __init__(self, drifts: dict[str, int]):
        self.drifts = drifts
        listed = ", ".join(f"{product_id}={drift:+d}" for product_id, drift in sorted(drifts.items()))
        super().__init__(f"Balance drift detected for {len(drifts)} product(s): {listed}")
