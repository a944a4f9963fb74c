from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from stockledger.core.api_docs import error_responses
from stockledger.core.deps import get_db
from stockledger.core.id_utils import generate_shortuuid
from stockledger.core.permissions import require_admin, require_stock_writer
from stockledger.core.security_current import get_current_user
from stockledger.models.product import Product
from stockledger.models.user import User
from stockledger.schemas.common import PaginationMeta
from stockledger.schemas.inventory import BalanceReportOut
from stockledger.schemas.product import (
    ProductBalanceOut,
    ProductCreate,
    ProductListOut,
    ProductOut,
    ProductUpdate,
)
from stockledger.services.audit_service import log_audit_event
from stockledger.services.balance_service import get_product_balance, stock_status
from stockledger.services.errors import ProductNotFound
from stockledger.services.reconciliation_service import verify_balance

router = APIRouter(prefix="/products", tags=["products"])
MAX_PRODUCT_PAGE_SIZE = 500


def _product_out(product: Product) -> ProductOut:
    return ProductOut(
        id=product.id,
        name=product.name,
        sku=product.sku,
        unit=product.unit,
        category=product.category,
        initial_stock=product.initial_stock,
        current_stock=product.current_stock,
        min_stock=product.min_stock,
        max_stock=product.max_stock,
        version=product.version,
        stock_status=stock_status(
            current_stock=product.current_stock,
            min_stock=product.min_stock,
            max_stock=product.max_stock,
        ),
        created_at=product.created_at,
        updated_at=product.updated_at,
    )


def _get_product_or_404(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return product


@router.post(
    "",
    response_model=ProductOut,
    status_code=201,
    summary="Create product",
    description="`initial_stock` seeds the balance; afterwards stock only changes through movements.",
    responses=error_responses(400, 401, 403, 422, 500),
)
def create_product(
    payload: ProductCreate,
    db: Session = Depends(get_db),
    actor: User = Depends(require_stock_writer),
):
    sku_exists = db.execute(
        select(Product.id).where(func.lower(Product.sku) == payload.sku.lower())
    ).scalar_one_or_none()
    if sku_exists:
        raise HTTPException(status_code=400, detail="SKU already exists")

    now = datetime.now(timezone.utc)
    product = Product(
        id=generate_shortuuid(),
        name=payload.name,
        sku=payload.sku,
        unit=payload.unit,
        category=payload.category,
        initial_stock=payload.initial_stock,
        current_stock=payload.initial_stock,
        min_stock=payload.min_stock,
        max_stock=payload.max_stock,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(product)
    log_audit_event(
        db,
        actor_user_id=actor.id,
        action="product.create",
        target_type="product",
        target_id=product.id,
        metadata_json={
            "name": product.name,
            "sku": product.sku,
            "initial_stock": product.initial_stock,
        },
    )
    db.commit()
    db.refresh(product)
    return _product_out(product)


@router.get(
    "",
    response_model=ProductListOut,
    summary="List products",
    responses={
        200: {
            "description": "Paginated products",
            "content": {
                "application/json": {
                    "example": {
                        "items": [
                            {
                                "id": "product-id",
                                "name": "A4 Paper 80gsm",
                                "sku": "PAP-A4-80",
                                "unit": "ream",
                                "category": "stationery",
                                "initial_stock": 100,
                                "current_stock": 120,
                                "min_stock": 10,
                                "max_stock": 500,
                                "version": 3,
                                "stock_status": "normal",
                                "created_at": "2026-02-16T10:00:00Z",
                                "updated_at": "2026-02-16T10:05:00Z",
                            }
                        ],
                        "pagination": {
                            "total": 1,
                            "limit": 50,
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
def list_products(
    q: Optional[str] = Query(default=None, description="Search name or SKU"),
    category: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=MAX_PRODUCT_PAGE_SIZE, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    stmt = select(Product)
    count_stmt = select(func.count(Product.id))
    if q and q.strip():
        term = q.strip().lower()
        condition = or_(
            func.lower(Product.name).contains(term, autoescape=True),
            func.lower(Product.sku).contains(term, autoescape=True),
        )
        stmt = stmt.where(condition)
        count_stmt = count_stmt.where(condition)
    if category:
        stmt = stmt.where(Product.category == category)
        count_stmt = count_stmt.where(Product.category == category)

    total = int(db.execute(count_stmt).scalar_one())
    products = db.execute(
        stmt.order_by(Product.name.asc(), Product.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_product_out(product) for product in products]
    return ProductListOut(
        items=items,
        pagination=PaginationMeta.for_page(
            total=total, limit=limit, offset=offset, count=len(items)
        ),
    )


@router.get(
    "/{product_id}",
    response_model=ProductOut,
    summary="Get product",
    responses=error_responses(401, 404, 500),
)
def get_product(
    product_id: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return _product_out(_get_product_or_404(db, product_id))


@router.patch(
    "/{product_id}",
    response_model=ProductOut,
    summary="Update product details",
    description="Only descriptive fields and thresholds can change; stock is never editable here.",
    responses=error_responses(401, 403, 404, 422, 500),
)
def update_product(
    product_id: str,
    payload: ProductUpdate,
    db: Session = Depends(get_db),
    actor: User = Depends(require_stock_writer),
):
    product = _get_product_or_404(db, product_id)
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"] is None:
        changes.pop("name")

    min_stock = changes.get("min_stock", product.min_stock)
    max_stock = changes.get("max_stock", product.max_stock)
    if min_stock is None:
        raise HTTPException(status_code=422, detail="min_stock cannot be null")
    if max_stock is not None and max_stock < min_stock:
        raise HTTPException(
            status_code=422,
            detail="max_stock must be greater than or equal to min_stock",
        )

    for field, value in changes.items():
        setattr(product, field, value)
    product.updated_at = datetime.now(timezone.utc)

    log_audit_event(
        db,
        actor_user_id=actor.id,
        action="product.update",
        target_type="product",
        target_id=product.id,
        metadata_json=changes,
    )
    db.commit()
    db.refresh(product)
    return _product_out(product)


@router.get(
    "/{product_id}/balance",
    response_model=ProductBalanceOut,
    summary="Get current product balance",
    responses=error_responses(401, 404, 500),
)
def read_product_balance(
    product_id: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    balance = get_product_balance(db, product_id)
    return ProductBalanceOut(
        product_id=balance.product_id,
        current_stock=balance.current_stock,
        version=balance.version,
        min_stock=balance.min_stock,
        max_stock=balance.max_stock,
        stock_status=balance.stock_status,
    )


@router.get(
    "/{product_id}/reconciliation",
    response_model=BalanceReportOut,
    summary="Verify product balance against its ledger",
    description=(
        "Reports drift between the stored balance and the ledger sum. Drift is logged, "
        "never corrected, and not audited from this endpoint."
    ),
    responses=error_responses(401, 403, 404, 500),
)
def reconcile_product(
    product_id: str,
    db: Session = Depends(get_db),
    actor: User = Depends(require_admin),
):
    report = verify_balance(db, product_id, actor_user_id=actor.id, audit=False)
    return BalanceReportOut(**asdict(report))
