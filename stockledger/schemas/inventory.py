from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from stockledger.schemas.common import PaginationMeta


class BalanceReportOut(BaseModel):
    product_id: str
    initial_stock: int
    total_in: int
    total_out: int
    expected: int
    actual: int
    drift: int
    movement_count: int
    checked_at: datetime

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id",
                "initial_stock": 100,
                "total_in": 50,
                "total_out": 30,
                "expected": 120,
                "actual": 120,
                "drift": 0,
                "movement_count": 2,
                "checked_at": "2026-02-16T10:00:00Z",
            }
        }
    )


class ReconciliationListOut(BaseModel):
    items: list[BalanceReportOut]
    products_checked: int
    drift_count: int


class LowStockProductOut(BaseModel):
    product_id: str
    name: str
    sku: str
    unit: Optional[str] = None
    min_stock: int
    current_stock: int
    stock_status: str


class LowStockListOut(BaseModel):
    items: list[LowStockProductOut]
    pagination: PaginationMeta
