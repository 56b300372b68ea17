import os
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine

from budgetbuddy.currency_conversion import (
    CompositeRateProvider,
    CurrencyConverter,
    FrankfurterRateProvider,
    RateProviderConverter,
    StaticRateProvider,
    is_currency_code,
    normalize_currency,
)
from budgetbuddy.logging_config import get_logger, set_user_context
from budgetbuddy.ocr_client import GoogleVisionOcrClient, extract_receipt, read_receipt_text
from budgetbuddy.period import MonthlyPeriod, resolve_period
from budgetbuddy.receipt_parser import apply_extraction, extract_from_text
from budgetbuddy.record_store import (
    category_belongs_to_user,
    ensure_default_categories,
    fetch_categories,
    fetch_preferred_currency,
    fetch_transactions,
    insert_transaction,
    metadata,
    user_exists,
)
from budgetbuddy.stats_engine import (
    AggregationTimeout,
    CategorySpending,
    MonthlyStats,
    aggregate_by_category,
    assemble_monthly_stats,
)

logger = get_logger()

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./budgetbuddy.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)

CENTS = Decimal("0.01")
MAX_TRANSACTION_AMOUNT = Decimal("1000000")
MAX_DESCRIPTION_LENGTH = 500


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "EUR")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "EUR"


def get_fx_timeout() -> float | None:
    raw = os.getenv("FX_TIMEOUT_SECONDS", "10")
    try:
        value = float(raw)
    except ValueError:
        return 10.0
    return value if value > 0 else None


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
FX_TIMEOUT_SECONDS = get_fx_timeout()
FX_PROVIDER = CompositeRateProvider(
    primary=FrankfurterRateProvider(),
    fallback=StaticRateProvider(),
)
OCR_CLIENT = GoogleVisionOcrClient(api_key=os.getenv("GOOGLE_VISION_API_KEY"))


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class CategorySpendingResponse(BaseModel):
    category_id: int
    category_name: str
    color: str
    spent: Decimal
    budget: Decimal
    remaining: Decimal
    percentage: Decimal
    transaction_count: int
    source_currencies: list[str]


class CurrencySpendingResponse(BaseModel):
    currency: str
    amount: Decimal
    converted_to_preferred: Decimal
    converted: bool


class DailySpendingResponse(BaseModel):
    date: date
    amount: Decimal
    transaction_count: int


class MonthlyStatsResponse(BaseModel):
    year: int
    month: int
    preferred_currency: str
    total_spent_this_month: Decimal
    total_budget_this_month: Decimal
    remaining_budget: Decimal
    budget_usage_percentage: Decimal
    total_transactions: int
    by_category: list[CategorySpendingResponse]
    by_currency: list[CurrencySpendingResponse]
    daily_spending: list[DailySpendingResponse]
    unconverted_currencies: list[str]


class ReceiptTextPayload(BaseModel):
    text: str


class ReceiptExtractionResponse(BaseModel):
    amount: Decimal | None = None
    label: str
    found: bool


class OcrPreviewPayload(BaseModel):
    image: str

    @classmethod
    def validate_payload(cls, payload: "OcrPreviewPayload") -> "OcrPreviewPayload":
        payload.image = payload.image.strip()
        if not payload.image:
            raise ValueError("Image required.")
        return payload


class OcrPreviewResponse(BaseModel):
    amount: Decimal | None = None
    description: str | None = None
    raw_text: str | None = None


class TransactionPayload(BaseModel):
    category_id: int | None = None
    amount: Decimal | None = None
    currency: str | None = None
    description: str | None = None
    transaction_date: datetime | None = None
    receipt_image: str | None = None
    receipt_text: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.currency is not None:
            payload.currency = normalize_currency(payload.currency)
            if not is_currency_code(payload.currency):
                raise ValueError("Currency must be a 3-letter ISO 4217 code.")
        payload.description = payload.description.strip() if payload.description else None
        if payload.description and len(payload.description) > MAX_DESCRIPTION_LENGTH:
            raise ValueError("Description must be at most 500 characters.")
        payload.receipt_image = payload.receipt_image.strip() if payload.receipt_image else None
        if payload.amount is not None:
            validate_amount(payload.amount)
        return payload


class TransactionResponse(BaseModel):
    id: int
    category_id: int | None = None
    amount: Decimal
    currency: str
    description: str
    receipt_image_url: str | None = None
    transaction_date: datetime


def validate_amount(amount: Decimal) -> None:
    if amount <= 0:
        raise ValueError("Amount must be greater than zero.")
    if amount > MAX_TRANSACTION_AMOUNT:
        raise ValueError("Amount exceeds the maximum allowed.")


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        if not user_exists(conn, user_id):
            raise HTTPException(status_code=404, detail="User not found.")
    set_user_context(user_id)
    return user_id


def resolve_preferred_currency(conn, user_id: int, requested: str | None = None) -> str:
    if requested:
        if not is_currency_code(requested):
            raise ValueError("Currency must be a 3-letter uppercase ISO 4217 code.")
        return requested
    stored = fetch_preferred_currency(conn, user_id)
    if stored and is_currency_code(stored):
        return stored
    return SYSTEM_DEFAULT_CURRENCY


def build_converter(period: MonthlyPeriod, now: datetime | None = None) -> CurrencyConverter:
    """Past months convert at their last day's rates; current and future ones at the latest."""
    current = now or datetime.now(timezone.utc)
    rate_date = None
    if not period.is_current(current) and period.start < current:
        rate_date = period.last_day
    return RateProviderConverter(FX_PROVIDER, rate_date=rate_date)


def get_monthly_stats(
    user_id: int,
    year: int | None,
    month: int | None,
    preferred_currency: str,
    *,
    converter: CurrencyConverter | None = None,
    timeout: float | None = None,
) -> MonthlyStats:
    if not is_currency_code(preferred_currency):
        raise ValueError("Currency must be a 3-letter uppercase ISO 4217 code.")
    period = resolve_period(year, month)
    with engine.begin() as conn:
        category_rows = fetch_categories(conn, user_id)
        transaction_rows = fetch_transactions(conn, user_id, period)

    stats = assemble_monthly_stats(
        category_rows,
        transaction_rows,
        preferred_currency,
        converter or build_converter(period),
        timeout=timeout,
    )
    logger.info(f"Stats generated for user {user_id}: {period.year}/{period.month}")
    return stats


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS)


def category_spending_response(entry: CategorySpending) -> CategorySpendingResponse:
    return CategorySpendingResponse(
        category_id=entry.category_id,
        category_name=entry.category_name,
        color=entry.color,
        spent=to_cents(entry.spent),
        budget=to_cents(entry.budget),
        remaining=to_cents(entry.remaining),
        percentage=to_cents(entry.percentage),
        transaction_count=entry.transaction_count,
        source_currencies=list(entry.source_currencies),
    )


def monthly_stats_response(
    period: MonthlyPeriod, preferred_currency: str, stats: MonthlyStats
) -> MonthlyStatsResponse:
    return MonthlyStatsResponse(
        year=period.year,
        month=period.month,
        preferred_currency=preferred_currency,
        total_spent_this_month=to_cents(stats.total_spent_this_month),
        total_budget_this_month=to_cents(stats.total_budget_this_month),
        remaining_budget=to_cents(stats.remaining_budget),
        budget_usage_percentage=to_cents(stats.budget_usage_percentage),
        total_transactions=stats.total_transactions,
        by_category=[category_spending_response(entry) for entry in stats.by_category],
        by_currency=[
            CurrencySpendingResponse(
                currency=entry.currency,
                amount=to_cents(entry.amount),
                converted_to_preferred=to_cents(entry.converted_to_preferred),
                converted=entry.converted,
            )
            for entry in stats.by_currency
        ],
        daily_spending=[
            DailySpendingResponse(
                date=entry.date,
                amount=to_cents(entry.amount),
                transaction_count=entry.transaction_count,
            )
            for entry in stats.daily_spending
        ],
        unconverted_currencies=stats.unconverted_currencies,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/users/me/stats", response_model=MonthlyStatsResponse)
def monthly_stats(
    year: int | None = Query(None),
    month: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MonthlyStatsResponse:
    user_id = get_user_id(x_user_id)
    try:
        period = resolve_period(year, month)
        with engine.begin() as conn:
            currency = resolve_preferred_currency(conn, user_id)
        stats = get_monthly_stats(
            user_id, period.year, period.month, currency, timeout=FX_TIMEOUT_SECONDS
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AggregationTimeout as exc:
        raise HTTPException(status_code=504, detail="Currency conversion timed out.") from exc
    return monthly_stats_response(period, currency, stats)


@app.get("/categories/spending", response_model=list[CategorySpendingResponse])
def categories_with_spending(
    year: int | None = Query(None),
    month: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategorySpendingResponse]:
    user_id = get_user_id(x_user_id)
    try:
        period = resolve_period(year, month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        ensure_default_categories(conn, user_id)
        category_rows = fetch_categories(conn, user_id)
        transaction_rows = fetch_transactions(conn, user_id, period)

    return [
        category_spending_response(entry)
        for entry in aggregate_by_category(category_rows, transaction_rows)
    ]


@app.post("/transactions/receipt-text/parse", response_model=ReceiptExtractionResponse)
def parse_receipt_text(payload: ReceiptTextPayload) -> ReceiptExtractionResponse:
    extraction = extract_from_text(payload.text)
    return ReceiptExtractionResponse(
        amount=extraction.amount,
        label=extraction.label,
        found=extraction.found,
    )


@app.post("/transactions/ocr-preview", response_model=OcrPreviewResponse)
def ocr_preview(
    payload: OcrPreviewPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> OcrPreviewResponse:
    get_user_id(x_user_id)
    try:
        payload = OcrPreviewPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    preview = extract_receipt(OCR_CLIENT, payload.image)
    return OcrPreviewResponse(
        amount=preview.amount,
        description=preview.description,
        raw_text=preview.raw_text,
    )


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    amount = payload.amount
    description = payload.description
    receipt_image_url = None
    receipt_text = payload.receipt_text
    if payload.receipt_image:
        if receipt_text is None:
            receipt_text = read_receipt_text(OCR_CLIENT, payload.receipt_image)
        # Only a short prefix is kept until receipts move to object storage.
        receipt_image_url = f"data:image/jpeg;base64,{payload.receipt_image[:100]}..."
    if receipt_text is not None:
        amount, description = apply_extraction(amount, description, extract_from_text(receipt_text))

    if amount is None:
        raise HTTPException(
            status_code=400, detail="Amount required: none supplied and none found on the receipt."
        )
    try:
        validate_amount(amount)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not description:
        raise HTTPException(status_code=400, detail="Description required.")

    with engine.begin() as conn:
        if payload.category_id is not None and not category_belongs_to_user(
            conn, user_id, payload.category_id
        ):
            raise HTTPException(status_code=400, detail="Category not found.")
        currency = resolve_preferred_currency(conn, user_id, payload.currency)
        row = insert_transaction(
            conn,
            user_id,
            amount=amount,
            currency=currency,
            description=description,
            transaction_date=payload.transaction_date or datetime.now(timezone.utc),
            category_id=payload.category_id,
            receipt_image_url=receipt_image_url,
        )

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return TransactionResponse(
        id=row["id"],
        category_id=row["category_id"],
        amount=row["amount"],
        currency=row["currency"],
        description=row["description"],
        receipt_image_url=row["receipt_image_url"],
        transaction_date=row["transaction_date"],
    )
