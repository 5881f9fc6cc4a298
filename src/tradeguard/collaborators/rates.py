"""Exchange rates — USDC priced in a fiat currency.

RateCache sits in front of a RateOracle: a fresh cached value is served
for ``ttl`` seconds; on oracle failure the last cached value is reused,
and with nothing cached the configured fallback rate applies.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from tradeguard.collaborators.timeouts import call_with_timeout
from tradeguard.errors import CollaboratorError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class RateOracle(abc.ABC):
    @abc.abstractmethod
    def usdc_rate(self, currency: str) -> Decimal:
        """Fiat units per 1 USDC."""


class StaticRateOracle(RateOracle):
    """Fixed rates. Unknown currencies raise KeyError."""

    def __init__(self, rates: dict[str, Decimal]) -> None:
        self._rates = {k.upper(): v for k, v in rates.items()}

    def usdc_rate(self, currency: str) -> Decimal:
        return self._rates[currency.upper()]


class RateCache:
    """TTL cache with last-known and configured fallbacks."""

    def __init__(
        self,
        oracle: Optional[RateOracle],
        fallback: Callable[[str], Decimal],
        ttl_seconds: float = 60,
        timeout_seconds: float = 4.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._oracle = oracle
        self._fallback = fallback
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[Decimal, float]] = {}

    def rate(self, currency: str) -> Decimal:
        currency = currency.upper()
        now = self._clock()
        with self._lock:
            cached = self._cache.get(currency)
        if cached and now - cached[1] < self._ttl:
            return cached[0]

        if self._oracle is not None:
            try:
                value = call_with_timeout(
                    self._oracle.usdc_rate, self._timeout, currency,
                    label="rates.usdc_rate",
                )
                if value is None or value <= 0:
                    raise CollaboratorError(f"Unusable rate for {currency}: {value}")
                value = Decimal(str(value))
                with self._lock:
                    self._cache[currency] = (value, now)
                return value
            except CollaboratorError as exc:
                logger.warning("Rate fetch failed for %s: %s", currency, exc)

        if cached:
            return cached[0]
        fallback = self._fallback(currency)
        logger.warning("No cached rate for %s, using fallback %s", currency, fallback)
        return fallback


def fiat_amount(amount_usdc: Decimal, rate: Decimal) -> Decimal:
    """USDC × rate, rounded half-up to the cent."""
    return (amount_usdc * rate).quantize(CENT, rounding=ROUND_HALF_UP)
