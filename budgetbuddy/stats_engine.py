"""
Monthly Financial Aggregation Engine

Groups one user's transactions for a period by category, currency and UTC
day, converts per-currency totals into the preferred currency, and derives
budget totals. Everything here is a pure computation over already-fetched
data except the currency conversions, which run concurrently (one call per
distinct currency).
"""
from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from budgetbuddy.currency_conversion import CurrencyConverter
from budgetbuddy.logging_config import get_logger
from budgetbuddy.period import to_utc

logger = get_logger()

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class AggregationTimeout(TimeoutError):
    """Raised when currency conversions are still outstanding at the deadline."""


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    color: str
    monthly_budget: Decimal


@dataclass(frozen=True)
class Transaction:
    id: int
    amount: Decimal
    currency: str
    transaction_date: datetime
    category_id: Optional[int] = None
    description: str = ""


@dataclass(frozen=True)
class CategorySpending:
    category_id: int
    category_name: str
    color: str
    spent: Decimal
    budget: Decimal
    transaction_count: int
    # Spent is a raw sum; more than one entry here means mixed currencies.
    source_currencies: tuple[str, ...] = ()

    @property
    def percentage(self) -> Decimal:
        return percentage_of(self.spent, self.budget)

    @property
    def remaining(self) -> Decimal:
        return self.budget - self.spent


@dataclass(frozen=True)
class CurrencySpending:
    currency: str
    amount: Decimal
    converted_to_preferred: Decimal
    converted: bool = True


@dataclass(frozen=True)
class DailySpending:
    date: date
    amount: Decimal
    transaction_count: int


@dataclass(frozen=True)
class MonthlyStats:
    total_transactions: int
    total_spent_this_month: Decimal
    total_budget_this_month: Decimal
    by_category: tuple[CategorySpending, ...]
    by_currency: tuple[CurrencySpending, ...]
    daily_spending: tuple[DailySpending, ...]

    @property
    def remaining_budget(self) -> Decimal:
        return self.total_budget_this_month - self.total_spent_this_month

    @property
    def budget_usage_percentage(self) -> Decimal:
        return percentage_of(self.total_spent_this_month, self.total_budget_this_month)

    @property
    def unconverted_currencies(self) -> list[str]:
        return [entry.currency for entry in self.by_currency if not entry.converted]


def assemble_monthly_stats(
    categories: Iterable[Category],
    transactions: Iterable[Transaction],
    preferred_currency: str,
    converter: CurrencyConverter,
    *,
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
) -> MonthlyStats:
    category_snapshot = tuple(categories)
    # Every aggregator sees the same materialized set.
    snapshot = tuple(transactions)

    by_currency, total_spent = aggregate_by_currency(
        snapshot,
        preferred_currency,
        converter,
        max_workers=max_workers,
        timeout=timeout,
    )
    by_category = aggregate_by_category(category_snapshot, snapshot)
    daily = bucketize_daily(snapshot)
    total_budget = sum(
        (_coerce_amount(category.monthly_budget) for category in category_snapshot),
        ZERO,
    )

    return MonthlyStats(
        total_transactions=len(snapshot),
        total_spent_this_month=total_spent,
        total_budget_this_month=total_budget,
        by_category=tuple(by_category),
        by_currency=tuple(by_currency),
        daily_spending=tuple(daily),
    )


def aggregate_by_currency(
    transactions: Iterable[Transaction],
    preferred_currency: str,
    converter: CurrencyConverter,
    *,
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
) -> tuple[list[CurrencySpending], Decimal]:
    """Sum raw amounts per currency and convert each sum once.

    A currency whose conversion fails keeps its raw amount, is flagged
    ``converted=False`` and is left out of the returned total.
    """
    totals: dict[str, Decimal] = {}
    for txn in transactions:
        totals[txn.currency] = totals.get(txn.currency, ZERO) + _coerce_amount(txn.amount)

    converted = _convert_totals(
        totals,
        preferred_currency,
        converter,
        max_workers=max_workers,
        timeout=timeout,
    )

    spending: list[CurrencySpending] = []
    total_converted = ZERO
    for currency in sorted(totals):
        amount = totals[currency]
        converted_amount = converted.get(currency)
        if converted_amount is None:
            spending.append(
                CurrencySpending(
                    currency=currency,
                    amount=amount,
                    converted_to_preferred=amount,
                    converted=False,
                )
            )
            continue
        spending.append(
            CurrencySpending(
                currency=currency,
                amount=amount,
                converted_to_preferred=converted_amount,
            )
        )
        total_converted += converted_amount
    return spending, total_converted


def _convert_totals(
    totals: dict[str, Decimal],
    preferred_currency: str,
    converter: CurrencyConverter,
    *,
    max_workers: Optional[int],
    timeout: Optional[float],
) -> dict[str, Optional[Decimal]]:
    results: dict[str, Optional[Decimal]] = {
        currency: amount
        for currency, amount in totals.items()
        if currency == preferred_currency
    }
    pending = {
        currency: amount
        for currency, amount in totals.items()
        if currency != preferred_currency
    }
    if not pending:
        return results

    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers or len(pending),
        thread_name_prefix="fx",
    )
    try:
        future_to_currency = {
            executor.submit(converter.convert, amount, currency, preferred_currency): currency
            for currency, amount in pending.items()
        }
        done, not_done = concurrent.futures.wait(future_to_currency, timeout=timeout)
        if not_done:
            outstanding = sorted(future_to_currency[future] for future in not_done)
            logger.error(f"Currency conversion timed out for {', '.join(outstanding)}")
            raise AggregationTimeout(
                f"Conversion to {preferred_currency} still pending for {', '.join(outstanding)}"
            )

        for future in done:
            currency = future_to_currency[future]
            try:
                value = future.result()
            except Exception as exc:
                logger.warning(f"Conversion {currency}->{preferred_currency} failed: {exc}")
                value = None
            else:
                if value is None:
                    logger.warning(f"Conversion {currency}->{preferred_currency} returned no result")
            results[currency] = None if value is None else _coerce_amount(value)
    finally:
        # Abandon anything still queued or running; callers never see partial stats.
        executor.shutdown(wait=False, cancel_futures=True)
    return results


def aggregate_by_category(
    categories: Iterable[Category],
    transactions: Iterable[Transaction],
) -> list[CategorySpending]:
    """One entry per category, ordered by name (case-insensitive).

    Uncategorized transactions, and those pointing at a category missing from
    ``categories``, are not counted here.
    """
    by_category: dict[int, list[Transaction]] = {}
    for txn in transactions:
        if txn.category_id is None:
            continue
        by_category.setdefault(txn.category_id, []).append(txn)

    result: list[CategorySpending] = []
    for category in sorted(categories, key=lambda item: item.name.casefold()):
        matched = by_category.get(category.id, [])
        spent = sum((_coerce_amount(txn.amount) for txn in matched), ZERO)
        result.append(
            CategorySpending(
                category_id=category.id,
                category_name=category.name,
                color=category.color,
                spent=spent,
                budget=_coerce_amount(category.monthly_budget),
                transaction_count=len(matched),
                source_currencies=tuple(sorted({txn.currency for txn in matched})),
            )
        )
    return result


def bucketize_daily(transactions: Iterable[Transaction]) -> list[DailySpending]:
    """Sparse per-day series keyed by UTC date; amounts are mixed-currency."""
    amounts: dict[date, Decimal] = {}
    counts: dict[date, int] = {}
    for txn in transactions:
        day = to_utc(txn.transaction_date).date()
        amounts[day] = amounts.get(day, ZERO) + _coerce_amount(txn.amount)
        counts[day] = counts.get(day, 0) + 1

    return [
        DailySpending(date=day, amount=amounts[day], transaction_count=counts[day])
        for day in sorted(amounts)
    ]


def percentage_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole == ZERO:
        return ZERO
    return part / whole * HUNDRED


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
