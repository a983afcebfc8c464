from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from billfold.config import Settings
from billfold.exceptions import RateProviderUnavailable

logger = logging.getLogger(__name__)

MIN_SANE_RATE = Decimal("0.0001")
MAX_SANE_RATE = Decimal("10000")

# Keyed "BASE-TARGET"; a missing pair is looked up reversed and inverted.
FALLBACK_RATES: dict[str, Decimal] = {
    "USD-EUR": Decimal("0.85"),
    "EUR-USD": Decimal("1.18"),
    "USD-GBP": Decimal("0.73"),
    "GBP-USD": Decimal("1.37"),
    "USD-JPY": Decimal("110.0"),
    "JPY-USD": Decimal("0.009"),
    "USD-INR": Decimal("74.5"),
    "INR-USD": Decimal("0.013"),
    "EUR-GBP": Decimal("0.86"),
    "GBP-EUR": Decimal("1.16"),
}

COMMON_CURRENCIES = ("USD", "EUR", "GBP", "JPY", "INR")


class RateFetcher(Protocol):
    def fetch_rate(self, base: str, target: str) -> Decimal:
        ...


@dataclass(frozen=True)
class CachedRate:
    rate: Decimal
    expires_at: float


@dataclass
class RateCache:
    """LRU cache of pair rates with a fixed time-to-live."""

    max_entries: int = 500
    ttl_seconds: float = 12 * 60 * 60
    clock: Callable[[], float] = time.monotonic
    _entries: OrderedDict[str, CachedRate] = field(default_factory=OrderedDict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get(self, key: str) -> Decimal | None:
        with self._lock:
            cached = self._entries.get(key)
            if cached is None:
                return None
            if cached.expires_at <= self.clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return cached.rate

    def set(self, key: str, rate: Decimal) -> None:
        with self._lock:
            self._entries[key] = CachedRate(rate=rate, expires_at=self.clock() + self.ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass(frozen=True)
class ExchangeRateApiProvider:
    api_key: str
    base_url: str = "https://v6.exchangerate-api.com/v6"
    timeout_seconds: float = 10.0

    def fetch_rate(self, base: str, target: str) -> Decimal:
        url = f"{self.base_url.rstrip('/')}/{self.api_key}/pair/{base}/{target}"
        request = Request(url, headers={"User-Agent": "Billfold/1.0", "Accept": "application/json"})
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        rate = payload.get("conversion_rate") if isinstance(payload, dict) else None
        if isinstance(rate, bool) or not isinstance(rate, (int, float)):
            raise RateProviderUnavailable("Exchange rate response missing conversion_rate")
        return Decimal(str(rate))


@dataclass
class ExchangeRateResolver:
    """Resolves pair rates from cache, the live provider, then static fallbacks.

    Lookups never raise for an unknown pair: when every source fails the rate
    is 1 and a warning is logged, so conversions cannot block a request.
    """

    provider: RateFetcher | None = None
    cache: RateCache = field(default_factory=RateCache)
    fallback_rates: dict[str, Decimal] = field(default_factory=lambda: dict(FALLBACK_RATES))
    max_retries: int = 3
    backoff_seconds: float = 1.0
    sleep: Callable[[float], None] = time.sleep

    def get_rate(self, base: str, target: str) -> Decimal:
        base = normalize_currency(base)
        target = normalize_currency(target)
        if base == target:
            return Decimal("1")

        cache_key = f"{base}-{target}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        if self.provider is None:
            logger.warning("Exchange rate API key not configured; using fallback rates.")
            return self._fallback_rate(base, target)

        for attempt in range(self.max_retries + 1):
            try:
                rate = self._fetch_checked(base, target)
            except RateProviderUnavailable as exc:
                logger.warning("Error fetching exchange rate (%s -> %s): %s", base, target, exc)
                if attempt < self.max_retries:
                    delay = self.backoff_seconds * (2**attempt)
                    logger.info(
                        "Retrying exchange rate fetch in %.1fs (attempt %d/%d)",
                        delay,
                        attempt + 1,
                        self.max_retries,
                    )
                    self.sleep(delay)
                continue

            self.cache.set(cache_key, rate)
            self.cache.set(f"{target}-{base}", Decimal("1") / rate)
            return rate

        return self._fallback_rate(base, target)

    def convert(self, amount: Decimal | int | float | str, source: str, target: str) -> Decimal:
        return _coerce_amount(amount) * self.get_rate(source, target)

    def convert_minor_units(self, amount: int, source: str, target: str) -> int:
        return round_minor_units(self.convert(amount, source, target))

    def get_batch_rates(self, base: str, targets: Iterable[str]) -> dict[str, Decimal]:
        rates: dict[str, Decimal] = {}
        for target in targets:
            try:
                rates[target] = self.get_rate(base, target)
            except ValueError as exc:
                logger.error("Failed to get rate for %s -> %s: %s", base, target, exc)
                rates[target] = Decimal("1")
        return rates

    def preload(self, base: str, currencies: Iterable[str] = COMMON_CURRENCIES) -> None:
        currencies = list(currencies)
        logger.info("Preloading exchange rates for %s", base)
        self.get_batch_rates(base, currencies)
        logger.info("Preloaded %d exchange rates", len(currencies))

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Exchange rate cache cleared")

    def cache_stats(self) -> dict:
        return {
            "size": len(self.cache),
            "max_entries": self.cache.max_entries,
            "ttl_seconds": self.cache.ttl_seconds,
        }

    def _fetch_checked(self, base: str, target: str) -> Decimal:
        rate = self.provider.fetch_rate(base, target)
        if rate < MIN_SANE_RATE or rate > MAX_SANE_RATE:
            raise RateProviderUnavailable(f"Unreasonable exchange rate received: {rate}")
        return rate

    def _fallback_rate(self, base: str, target: str) -> Decimal:
        cache_key = f"{base}-{target}"
        direct = self.fallback_rates.get(cache_key)
        if direct is not None:
            logger.warning("Using fallback rate for %s -> %s: %s", base, target, direct)
            self.cache.set(cache_key, direct)
            return direct

        reverse = self.fallback_rates.get(f"{target}-{base}")
        if reverse is not None:
            rate = Decimal("1") / reverse
            logger.warning("Using reverse fallback rate for %s -> %s: %s", base, target, rate)
            self.cache.set(cache_key, rate)
            return rate

        logger.warning("No exchange rate available for %s -> %s, using rate of 1", base, target)
        return Decimal("1")


def build_rate_resolver(settings: Settings) -> ExchangeRateResolver:
    provider = None
    if settings.exchange_rate_api_key:
        provider = ExchangeRateApiProvider(
            api_key=settings.exchange_rate_api_key,
            base_url=settings.exchange_rate_base_url,
            timeout_seconds=settings.rate_timeout_seconds,
        )
    return ExchangeRateResolver(
        provider=provider,
        cache=RateCache(
            max_entries=settings.rate_cache_max_entries,
            ttl_seconds=settings.rate_cache_ttl_seconds,
        ),
        max_retries=settings.rate_max_retries,
        backoff_seconds=settings.rate_backoff_seconds,
    )


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def round_minor_units(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
