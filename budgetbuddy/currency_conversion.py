from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import json
import re
import threading
import time
from typing import Mapping, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

CURRENCY_CODE_PATTERN = re.compile(r"^[A-Z]{3}$")

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
    "MAD": Decimal("10.05"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class ConversionError(RuntimeError):
    """Raised when an amount cannot be converted between two currencies."""


class RateProvider(Protocol):
    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        ...


class CurrencyConverter(Protocol):
    """Converts an amount between currencies.

    Implementations may raise ConversionError or return None when a pair
    cannot be converted.
    """

    def convert(self, amount: Decimal, source_currency: str, target_currency: str) -> Optional[Decimal]:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self.rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float | None


@dataclass
class FrankfurterRateProvider:
    base_currency: str = "USD"
    base_url: str = "https://api.frankfurter.app"
    cache_ttl_seconds: int = 12 * 60 * 60
    request_timeout: float = 8
    _cache: dict[tuple[str, str], CachedRates] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        base_currency = normalize_currency(self.base_currency)
        if normalized == base_currency:
            return Decimal("1")

        date_key = _normalize_rate_date(date)
        rates = self._get_rates(base_currency, date_key)
        try:
            return rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc

    def _get_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        cache_key = (base_currency, date_key or "latest")
        # Shared by conversion threads; a key is fetched once.
        with self._lock:
            cached = self._cache.get(cache_key)
            now = time.monotonic()
            if cached and (cached.expires_at is None or cached.expires_at > now):
                return cached.rates

            rates = self._fetch_rates(base_currency, date_key)
            # Historical rates never change, so only "latest" expires.
            expires_at = None
            if date_key is None:
                expires_at = now + self.cache_ttl_seconds
            self._cache[cache_key] = CachedRates(rates=rates, expires_at=expires_at)
            return rates

    def _fetch_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        endpoint = date_key or "latest"
        url = f"{self.base_url}/{endpoint}?from={base_currency}"
        try:
            with urlopen(url, timeout=self.request_timeout) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[base_currency] = Decimal("1")
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: StaticRateProvider

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        try:
            return self.primary.get_rate(currency, date=date)
        except RateProviderUnavailable:
            return self.fallback.get_rate(currency, date=date)


@dataclass(frozen=True)
class RateProviderConverter:
    """Adapts a rate provider to the CurrencyConverter interface.

    ``rate_date`` pins conversions to historical rates; None uses the latest.
    """

    provider: RateProvider
    rate_date: date | None = None

    def convert(self, amount: Decimal, source_currency: str, target_currency: str) -> Decimal:
        try:
            return convert_amount(
                amount,
                source_currency,
                target_currency,
                rate_provider=self.provider,
                date=self.rate_date,
            )
        except (ValueError, RateProviderUnavailable) as exc:
            raise ConversionError(
                f"Cannot convert {source_currency} to {target_currency}: {exc}"
            ) from exc


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: RateProvider | None = None,
    date: date | str | None = None,
) -> Decimal:
    """Convert a monetary amount for display using deterministic FX rates."""
    provider = rate_provider or StaticRateProvider()
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    source_rate = provider.get_rate(normalized_source, date=date)
    target_rate = provider.get_rate(normalized_target, date=date)
    amount_in_usd = coerced_amount / source_rate
    return amount_in_usd * target_rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def is_currency_code(value: str | None) -> bool:
    return bool(value) and CURRENCY_CODE_PATTERN.match(value) is not None


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _normalize_rate_date(value: date | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
    return parsed.isoformat()
