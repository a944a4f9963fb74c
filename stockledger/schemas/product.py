from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stockledger.models.product import MAX_STOCK_QUANTITY
from stockledger.schemas.common import PaginationMeta


class ProductCreate(BaseModel):
    name: str
    sku: str
    unit: Optional[str] = None
    category: Optional[str] = None
    initial_stock: int = Field(default=0, ge=0, le=MAX_STOCK_QUANTITY)
    min_stock: int = Field(default=0, ge=0, le=MAX_STOCK_QUANTITY)
    max_stock: Optional[int] = Field(default=None, ge=0, le=MAX_STOCK_QUANTITY)

    @field_validator("name", "sku")
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("value is required")
        return cleaned

    @field_validator("unit", "category")
    @classmethod
    def normalize_optional_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_thresholds(self) -> "ProductCreate":
        if self.max_stock is not None and self.max_stock < self.min_stock:
            raise ValueError("max_stock must be greater than or equal to min_stock")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "A4 Paper 80gsm",
                "sku": "PAP-A4-80",
                "unit": "ream",
                "category": "stationery",
                "initial_stock": 100,
                "min_stock": 10,
                "max_stock": 500,
            }
        }
    )


class ProductUpdate(BaseModel):
    """Stock fields are deliberately absent; balances change only through movements."""

    name: Optional[str] = None
    unit: Optional[str] = None
    category: Optional[str] = None
    min_stock: Optional[int] = Field(default=None, ge=0, le=MAX_STOCK_QUANTITY)
    max_stock: Optional[int] = Field(default=None, ge=0, le=MAX_STOCK_QUANTITY)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name cannot be empty")
        return cleaned

    @field_validator("unit", "category")
    @classmethod
    def normalize_optional_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "example": {
                "name": "A4 Paper 80gsm (white)",
                "min_stock": 20,
            }
        },
    )


class ProductOut(BaseModel):
    id: str
    name: str
    sku: str
    unit: Optional[str] = None
    category: Optional[str] = None
    initial_stock: int
    current_stock: int
    min_stock: int
    max_stock: Optional[int] = None
    version: int
    stock_status: str
    created_at: datetime
    updated_at: datetime


class ProductListOut(BaseModel):
    items: list[ProductOut]
    pagination: PaginationMeta


class ProductBalanceOut(BaseModel):
    product_id: str
    current_stock: int
    version: int
    min_stock: int
    max_stock: Optional[int] = None
    stock_status: str

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "product_id": "product-id",
                "current_stock": 120,
                "version": 3,
                "min_stock": 10,
                "max_stock": 500,
                "stock_status": "normal",
            }
        }
    )
