from sqlalchemy import text

from stockledger.core.observability import (
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    stock_ledger_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from stockledger.core.config import settings
from stockledger.db.session import engine
from stockledger.routers import auth, inventory, movements, products
from stockledger.services.errors import StockLedgerError

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Stock movement ledger API.\n\n"
        "Every stock change is an append-only movement; product balances are a cached "
        "sum of the ledger guarded by optimistic concurrency.\n\n"
        "Swagger quick test flow:\n"
        "1. Call `POST /auth/register` (the first account becomes admin) or `POST /auth/login`.\n"
        "2. Click **Authorize** and use your email/username + password "
        "(OAuth token URL: `/auth/token`).\n"
        "3. Create a product with `POST /products`, then record stock with `POST /movements`."
    ),
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "auth", "description": "User authentication and token lifecycle."},
        {"name": "products", "description": "Product catalog, balances and per-product reconciliation."},
        {"name": "movements", "description": "Append-only stock movement ledger, idempotent submission and reversal."},
        {"name": "inventory", "description": "Low-stock alerts and ledger-wide reconciliation."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(StockLedgerError, stock_ledger_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

app.include_router(auth.router)
app.include_router(products.router)
app.include_router(movements.router)
app.include_router(inventory.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
