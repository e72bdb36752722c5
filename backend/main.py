from contextlib import asynccontextmanager
from typing import Optional
import time

import structlog
from fastapi import FastAPI, Depends, Header, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import schemas
from config import Settings, load_settings
from ledger import (
    DEFAULT_SORT,
    ExpenseFilter,
    ExpenseInput,
    InvalidAmountError,
    LedgerError,
    LedgerStore,
    MAX_IDEMPOTENCY_KEY_LENGTH,
    StorageUnavailableError,
)
from logging_config import configure_logging
from memory_store import InMemoryLedgerStore
from mongo_store import MongoLedgerStore
from sql_store import SqlLedgerStore

logger = structlog.get_logger(__name__)


def build_store(settings: Settings) -> LedgerStore:
    """Construct the ledger backend named by LEDGER_BACKEND."""
    if settings.ledger_backend == "memory":
        return InMemoryLedgerStore()
    if settings.ledger_backend == "mongo":
        return MongoLedgerStore.from_uri(settings.mongodb_uri)
    return SqlLedgerStore.from_url(settings.database_url)


def get_store(request: Request) -> LedgerStore:
    """Dependency that provides the app's ledger store."""
    return request.app.state.store


def create_app(store: Optional[LedgerStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the Expense Tracker API.

    Pass `store` to use a specific ledger (tests do this); otherwise one is
    built from `settings` when the app starts.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.store is None:
            app.state.store = build_store(settings)
            logger.info("ledger_store_ready", backend=settings.ledger_backend)
        yield

    app = FastAPI(
        title="Expense Tracker API",
        description="A personal finance expense tracker API with idempotent expense creation.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Invalid expense payload",
                "detail": jsonable_encoder(exc.errors(), custom_encoder={Exception: str}),
            },
        )

    @app.exception_handler(InvalidAmountError)
    async def invalid_amount(request: Request, exc: InvalidAmountError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": str(exc)},
        )

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable(request: Request, exc: StorageUnavailableError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "Storage unavailable"},
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(LedgerError)
    async def ledger_error(request: Request, exc: LedgerError):
        logger.error("ledger_error", error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to process expense"},
        )

    @app.get("/", tags=["Health"])
    def root():
        return {"status": "ok", "message": "Expense Tracker API is running."}

    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "ok"}

    @app.post(
        "/expenses",
        response_model=schemas.ExpenseResponse,
        status_code=status.HTTP_201_CREATED,
        responses={400: {"model": schemas.ErrorResponse}, 503: {"model": schemas.ErrorResponse}},
        tags=["Expenses"],
        summary="Create a new expense (idempotent)",
    )
    def create_expense(
        expense_in: schemas.ExpenseCreate,
        idempotency_key: Optional[str] = Header(
            default=None, alias="Idempotency-Key", max_length=MAX_IDEMPOTENCY_KEY_LENGTH
        ),
        store: LedgerStore = Depends(get_store),
    ):
        """
        Create a new expense entry.

        - **Idempotent**: send the same `Idempotency-Key` header more than once
          (e.g., a retry on a slow network) and the original record comes back
          without a duplicate being created. Fields in the retry are ignored.
        - The body field `idempotency_key` is honoured when the header is absent.
        - Without any key each call records a new expense.
        """
        expense = store.record(
            ExpenseInput(
                amount=expense_in.amount,
                category=expense_in.category,
                description=expense_in.description,
                date=expense_in.date,
            ),
            idempotency_key=(idempotency_key or "").strip() or expense_in.idempotency_key or None,
        )
        return schemas.ExpenseResponse.model_validate(expense)

    @app.get(
        "/expenses",
        response_model=list[schemas.ExpenseResponse],
        tags=["Expenses"],
        summary="List expenses with optional filter, newest first",
    )
    def list_expenses(
        category: Optional[str] = Query(default=None, description="Filter by category (exact match)"),
        sort: str = Query(default=DEFAULT_SORT, description="Only date_desc is supported; others fall back to it"),
        store: LedgerStore = Depends(get_store),
    ):
        """
        Retrieve expenses.

        - Filter by `category` (exact match after trimming; blank means all).
        - Ordered by date, newest first; same-day entries newest-created first.
        """
        expenses = store.query(ExpenseFilter(category=category, sort=sort))
        return [schemas.ExpenseResponse.model_validate(e) for e in expenses]

    return app


def _bootstrap() -> FastAPI:
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    return create_app(settings=settings)


app = _bootstrap()
