"""On-chain ledger reads — balances, trading limits and staked collateral.

The engine only consumes the LedgerClient interface. Every read is
advisory: ``None`` means "unknown", and a failed or slow ledger never
blocks a trade. ``GuardedLedger`` wraps a client with the configured
timeout and turns failures into ``None`` with a logged warning.
"""

from __future__ import annotations

import abc
import logging
from decimal import Decimal
from typing import Optional

from tradeguard.collaborators.timeouts import call_with_timeout
from tradeguard.errors import CollaboratorError

logger = logging.getLogger(__name__)


class LedgerClient(abc.ABC):
    """Read-only view of the settlement chain."""

    @abc.abstractmethod
    def usdc_balance(self, address: str) -> Optional[Decimal]: ...

    @abc.abstractmethod
    def trading_limit(self, address: str) -> Optional[Decimal]:
        """Per-order USDC limit granted to the address."""

    @abc.abstractmethod
    def staked_balance(self, address: str) -> Optional[Decimal]: ...


class StaticLedgerClient(LedgerClient):
    """In-process ledger with fixed balances. Unknown addresses read as None."""

    def __init__(
        self,
        balances: Optional[dict[str, Decimal]] = None,
        limits: Optional[dict[str, Decimal]] = None,
        stakes: Optional[dict[str, Decimal]] = None,
    ) -> None:
        self._balances = {k.lower(): v for k, v in (balances or {}).items()}
        self._limits = {k.lower(): v for k, v in (limits or {}).items()}
        self._stakes = {k.lower(): v for k, v in (stakes or {}).items()}

    def usdc_balance(self, address: str) -> Optional[Decimal]:
        return self._balances.get(address.lower())

    def trading_limit(self, address: str) -> Optional[Decimal]:
        return self._limits.get(address.lower())

    def staked_balance(self, address: str) -> Optional[Decimal]:
        return self._stakes.get(address.lower())


class GuardedLedger:
    """Timeout-bounded ledger reads that fall back to ``None``."""

    def __init__(self, client: Optional[LedgerClient], timeout_seconds: float) -> None:
        self._client = client
        self._timeout = timeout_seconds

    def _read(self, method: str, address: str) -> Optional[Decimal]:
        if self._client is None:
            return None
        fn = getattr(self._client, method)
        try:
            return call_with_timeout(
                fn, self._timeout, address, label=f"ledger.{method}",
            )
        except CollaboratorError as exc:
            logger.warning("Ledger read failed, allowing through: %s", exc)
            return None

    def usdc_balance(self, address: str) -> Optional[Decimal]:
        return self._read("usdc_balance", address)

    def trading_limit(self, address: str) -> Optional[Decimal]:
        return self._read("trading_limit", address)

    def staked_balance(self, address: str) -> Optional[Decimal]:
        return self._read("staked_balance", address)
