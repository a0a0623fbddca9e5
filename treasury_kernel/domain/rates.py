"""Exchange rates -- oracle protocol, in-memory and caching oracles, conversion math.

The rate-scraping job lives outside this package.  The ledger only needs a
``get_rate(pair, source)`` returning a buy/sell quote; where the quote comes
from is the oracle implementation's business.

Conversion convention (the back office quotes ARS per USD):

    ARS -> USD   amount / buy    (the desk buys the client's pesos)
    USD -> ARS   amount * sell

Results are rounded half-up to two places.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable

from treasury_kernel.db.types import ARS, MONEY_DECIMAL_PLACES, USD, round_money, validate_currency
from treasury_kernel.domain.clock import Clock, SystemClock
from treasury_kernel.exceptions import (
    InvalidAmountError,
    InvalidConversionError,
    RateUnavailableError,
)
from treasury_kernel.logging_config import get_logger

logger = get_logger("domain.rates")

USD_ARS = "USD/ARS"


class RateSource(str, Enum):
    """Published dollar quotes."""

    BLUE = "blue"
    OFICIAL = "oficial"
    MEP = "mep"
    CCL = "ccl"


class ConversionSide(str, Enum):
    """Which side of the quote a conversion used."""

    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class RateQuote:
    """Buy/sell quote for a pair, in units of quote currency per base."""

    buy: Decimal
    sell: Decimal
    as_of: datetime

    def is_usable(self) -> bool:
        return (
            isinstance(self.buy, Decimal)
            and isinstance(self.sell, Decimal)
            and self.buy.is_finite()
            and self.sell.is_finite()
            and self.buy > 0
            and self.sell > 0
        )


@runtime_checkable
class ExchangeRateOracle(Protocol):
    """Source of current exchange rate quotes.

    Implementations: StaticRateOracle (in-memory), CachingRateOracle
    (TTL cache with stale fallback around another oracle).
    """

    def get_rate(self, pair: str, source: str) -> RateQuote:
        """Return the latest quote.

        Raises:
            RateUnavailableError: When no quote can be produced.
        """
        ...


class StaticRateOracle:
    """Oracle over an in-memory table of quotes, keyed by (pair, source)."""

    def __init__(self, quotes: dict[tuple[str, str], RateQuote] | None = None):
        self._quotes: dict[tuple[str, str], RateQuote] = dict(quotes or {})
        self._lock = threading.Lock()

    def set_quote(self, pair: str, source: str, quote: RateQuote) -> None:
        with self._lock:
            self._quotes[(pair, _source_value(source))] = quote

    def remove_quote(self, pair: str, source: str) -> None:
        with self._lock:
            self._quotes.pop((pair, _source_value(source)), None)

    def get_rate(self, pair: str, source: str) -> RateQuote:
        with self._lock:
            quote = self._quotes.get((pair, _source_value(source)))
        if quote is None:
            raise RateUnavailableError(pair, _source_value(source), "no quote published")
        return quote


class CachingRateOracle:
    """
    TTL cache around another oracle.

    A fresh entry is served without calling the inner oracle.  When the
    entry has expired and the inner oracle fails, the expired entry is
    served instead (logged as ``rate_stale_fallback``) if ``allow_stale``.
    """

    def __init__(
        self,
        inner: ExchangeRateOracle,
        clock: Clock | None = None,
        ttl_seconds: int = 300,
        allow_stale: bool = True,
    ):
        self._inner = inner
        self._clock = clock or SystemClock()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._allow_stale = allow_stale
        self._cache: dict[tuple[str, str], tuple[RateQuote, datetime]] = {}
        self._lock = threading.Lock()

    def get_rate(self, pair: str, source: str) -> RateQuote:
        key = (pair, _source_value(source))
        now = self._clock.now()
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None and now - cached[1] < self._ttl:
            return cached[0]

        try:
            quote = self._inner.get_rate(pair, key[1])
        except RateUnavailableError:
            if cached is not None and self._allow_stale:
                logger.warning(
                    "rate_stale_fallback",
                    extra={
                        "pair": pair,
                        "source": key[1],
                        "cached_at": cached[1],
                        "age_seconds": (now - cached[1]).total_seconds(),
                    },
                )
                return cached[0]
            raise

        with self._lock:
            self._cache[key] = (quote, now)
        logger.debug("rate_cached", extra={"pair": pair, "source": key[1]})
        return quote

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()


@dataclass(frozen=True)
class ConversionQuote:
    """Result of applying a quote to an amount.  Pure, no ledger effect."""

    from_currency: str
    from_amount: Decimal
    to_currency: str
    to_amount: Decimal
    rate: Decimal
    side: ConversionSide
    source: str
    quoted_at: datetime


def compute_conversion(
    from_currency: str,
    to_currency: str,
    amount: Decimal,
    quote: RateQuote,
    source: str,
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> ConversionQuote:
    """
    Convert ``amount`` between ARS and USD with a USD/ARS quote.

    Raises:
        InvalidConversionError: Same currency on both sides.
        RateUnavailableError: Quote is zero, negative or non-finite.
        InvalidAmountError: Converted amount rounds to zero.
    """
    from_currency = validate_currency(from_currency)
    to_currency = validate_currency(to_currency)
    if from_currency == to_currency:
        raise InvalidConversionError(from_currency, to_currency, "currencies must differ")
    if not quote.is_usable():
        raise RateUnavailableError(USD_ARS, _source_value(source), "quote is not positive")

    if from_currency == ARS and to_currency == USD:
        side, rate = ConversionSide.BUY, quote.buy
        converted = amount / rate
    else:
        side, rate = ConversionSide.SELL, quote.sell
        converted = amount * rate

    to_amount = round_money(converted, decimal_places)
    if to_amount <= 0:
        raise InvalidAmountError(amount, f"converts to {to_amount} {to_currency}")

    return ConversionQuote(
        from_currency=from_currency,
        from_amount=amount,
        to_currency=to_currency,
        to_amount=to_amount,
        rate=rate,
        side=side,
        source=_source_value(source),
        quoted_at=quote.as_of,
    )


def _source_value(source: str | RateSource) -> str:
    return source.value if isinstance(source, RateSource) else str(source)
