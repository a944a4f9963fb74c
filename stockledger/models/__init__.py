from stockledger.models.user import User
from stockledger.models.refresh_token import RefreshToken
from stockledger.models.audit_log import AuditLog
from stockledger.models.product import Product
from stockledger.models.movement import StockMovement
from stockledger.models.idempotency import MovementIdempotencyKey
