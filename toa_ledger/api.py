import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, get_settings
from .errors import (
    GENERIC_RETRY_MESSAGE,
    AccountNotFound,
    IdempotencyConflict,
    LedgerError,
    StoreUnavailable,
    ValidationRejected,
)
from .fees import split_fee, split_payment
from .models import (
    AccountBalance,
    AppreciationResponse,
    ConversionResult,
    ConversionStatus,
    ConvertPointsRequest,
    EarningsSummary,
    FeeSplit,
    LedgerHistoryResponse,
    OpenAccountRequest,
    PaymentBreakdown,
    PurchaseResponse,
    SendTokensRequest,
    ThankYouRequest,
    TokenPurchaseRequest,
    TransactionType,
)
from .service import LedgerService
from .store import InMemoryLedgerStore, LedgerStore

logger = logging.getLogger(__name__)


def build_store() -> LedgerStore:
    settings = get_settings()
    if settings.store_backend == "sql":
        from .sql_store import SqlLedgerStore
        return SqlLedgerStore(settings.database_url)
    return InMemoryLedgerStore()


def to_http_error(error: LedgerError) -> HTTPException:
    detail = {"error": type(error).__name__, "message": error.user_message}
    if isinstance(error, AccountNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(error, ValidationRejected):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    if isinstance(error, IdempotencyConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(error, StoreUnavailable):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
    logger.error("Unhandled ledger error: %s", error.message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": type(error).__name__, "message": GENERIC_RETRY_MESSAGE},
    )


configure_logging()
ledger_service = LedgerService(build_store())


@asynccontextmanager
async def lifespan(app: FastAPI):
    init = getattr(ledger_service.store, "init", None)
    if init is not None:
        await init()
    yield
    await ledger_service.store.close()


app = FastAPI(
    title="ThankATech Appreciation Ledger API",
    description="Points, Tokens of Appreciation and point-to-token conversions with an append-only ledger",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "toa-ledger"}


@app.post("/accounts", response_model=AccountBalance, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
async def open_account(request: OpenAccountRequest) -> AccountBalance:
    try:
        return await ledger_service.open_account(request.user_id)
    except LedgerError as e:
        raise to_http_error(e)


@app.get("/accounts/{user_id}", response_model=AccountBalance, tags=["Accounts"])
async def get_balance(user_id: str) -> AccountBalance:
    try:
        return await ledger_service.get_balance(user_id)
    except LedgerError as e:
        raise to_http_error(e)


@app.get("/accounts/{user_id}/transactions", response_model=LedgerHistoryResponse, tags=["Accounts"])
async def get_transactions(
    user_id: str,
    type: Optional[TransactionType] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> LedgerHistoryResponse:
    try:
        return await ledger_service.get_history(user_id, type, limit, offset)
    except LedgerError as e:
        raise to_http_error(e)


@app.get("/accounts/{user_id}/conversion-status", response_model=ConversionStatus, tags=["Conversions"])
async def get_conversion_status(user_id: str) -> ConversionStatus:
    try:
        return await ledger_service.conversion_status(user_id)
    except LedgerError as e:
        raise to_http_error(e)


@app.post("/thank-yous", response_model=AppreciationResponse, status_code=status.HTTP_201_CREATED, tags=["Appreciation"])
async def send_thank_you(request: ThankYouRequest) -> AppreciationResponse:
    try:
        return await ledger_service.send_thank_you(request)
    except LedgerError as e:
        raise to_http_error(e)


@app.post("/tokens/send", response_model=AppreciationResponse, status_code=status.HTTP_201_CREATED, tags=["Appreciation"])
async def send_tokens(request: SendTokensRequest) -> AppreciationResponse:
    try:
        return await ledger_service.send_tokens(request)
    except LedgerError as e:
        raise to_http_error(e)


@app.post("/tokens/purchases", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED, tags=["Tokens"])
async def record_token_purchase(request: TokenPurchaseRequest) -> PurchaseResponse:
    try:
        return await ledger_service.record_token_purchase(request)
    except LedgerError as e:
        raise to_http_error(e)


@app.post("/conversions", response_model=ConversionResult, status_code=status.HTTP_201_CREATED, tags=["Conversions"])
async def convert_points(request: ConvertPointsRequest) -> ConversionResult:
    try:
        return await ledger_service.convert_points(request)
    except LedgerError as e:
        raise to_http_error(e)


@app.get("/technicians/{technician_id}/earnings", response_model=EarningsSummary, tags=["Technicians"])
async def get_earnings(technician_id: str) -> EarningsSummary:
    try:
        return await ledger_service.get_earnings(technician_id)
    except LedgerError as e:
        raise to_http_error(e)


@app.get("/fees/quote", tags=["Fees"])
def quote_fees(dollar_value: Decimal, include_flat_fee: bool = False) -> FeeSplit | PaymentBreakdown:
    try:
        if include_flat_fee:
            return split_payment(dollar_value)
        return split_fee(dollar_value)
    except LedgerError as e:
        raise to_http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
