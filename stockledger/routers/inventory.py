from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from stockledger.core.api_docs import error_responses
from stockledger.core.config import settings
from stockledger.core.deps import get_db
from stockledger.core.permissions import require_admin
from stockledger.core.security_current import get_current_user
from stockledger.models.product import MAX_STOCK_QUANTITY, Product
from stockledger.models.user import User
from stockledger.schemas.common import PaginationMeta
from stockledger.schemas.inventory import (
    BalanceReportOut,
    LowStockListOut,
    LowStockProductOut,
    ReconciliationListOut,
)
from stockledger.services.balance_service import stock_status
from stockledger.services.reconciliation_service import verify_all_balances

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.get(
    "/low-stock",
    response_model=LowStockListOut,
    summary="List low-stock products",
    responses={
        200: {
            "description": "Paginated low-stock products",
            "content": {
                "application/json": {
                    "example": {
                        "items": [
                            {
                                "product_id": "product-id",
                                "name": "A4 Paper 80gsm",
                                "sku": "PAP-A4-80",
                                "unit": "ream",
                                "min_stock": 10,
                                "current_stock": 3,
                                "stock_status": "low",
                            }
                        ],
                        "pagination": {
                            "total": 1,
                            "limit": 100,
                            "offset": 0,
                            "count": 1,
                            "has_next": False,
                        },
                    }
                }
            },
        },
        **error_responses(401, 422, 500),
    },
)
def list_low_stock_products(
    threshold: int | None = Query(
        default=None,
        ge=0,
        le=MAX_STOCK_QUANTITY,
        description="Optional global threshold override. Defaults to product min_stock or configured default.",
    ),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    if threshold is not None:
        condition = Product.current_stock <= threshold
    else:
        effective_threshold = case(
            (Product.min_stock > 0, Product.min_stock),
            else_=settings.low_stock_default_threshold,
        )
        condition = Product.current_stock <= effective_threshold

    total = int(db.execute(select(func.count(Product.id)).where(condition)).scalar_one())
    products = db.execute(
        select(Product)
        .where(condition)
        .order_by(Product.current_stock.asc(), Product.name.asc(), Product.id.asc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()

    items = [
        LowStockProductOut(
            product_id=product.id,
            name=product.name,
            sku=product.sku,
            unit=product.unit,
            min_stock=product.min_stock,
            current_stock=product.current_stock,
            stock_status=stock_status(
                current_stock=product.current_stock,
                min_stock=product.min_stock,
                max_stock=product.max_stock,
            ),
        )
        for product in products
    ]
    return LowStockListOut(
        items=items,
        pagination=PaginationMeta.for_page(
            total=total, limit=limit, offset=offset, count=len(items)
        ),
    )


@router.get(
    "/reconciliation",
    response_model=ReconciliationListOut,
    summary="Verify every product balance against the ledger",
    description="Read-only check. Drifting products are logged and audited, never corrected.",
    responses=error_responses(401, 403, 500),
)
def reconcile_all_products(
    db: Session = Depends(get_db),
    actor: User = Depends(require_admin),
):
    reports = verify_all_balances(db, actor_user_id=actor.id)
    return ReconciliationListOut(
        items=[BalanceReportOut(**asdict(report)) for report in reports],
        products_checked=len(reports),
        drift_count=sum(1 for report in reports if report.has_drift),
    )
