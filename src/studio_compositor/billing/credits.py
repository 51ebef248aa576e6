"""Credit units, job prices and the atomic debit ledger.

Balances are stored in integer units; 100 units are one displayed credit.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Final, Literal, Protocol

LOG = logging.getLogger(__name__)

UNITS_PER_CREDIT: Final[int] = 100

JobMode = Literal["preview", "final", "final_4k", "caption"]

JOB_COSTS: Final[dict[str, int]] = {
    "preview": 50,
    "final": 100,
    "final_4k": 200,
    "caption": 25,
}

USER_NOT_FOUND: Final[str] = "USER_NOT_FOUND"
INSUFFICIENT_CREDITS: Final[str] = "INSUFFICIENT_CREDITS"


def units_to_credits(units: int) -> float:
    return units / UNITS_PER_CREDIT


def credits_to_units(credits: float) -> int:
    return round(credits * UNITS_PER_CREDIT)


def job_cost(mode: JobMode) -> int:
    """Price of a job in units.

    Raises:
        ValueError: For an unknown job mode.
    """
    try:
        return JOB_COSTS[mode]
    except KeyError as e:
        raise ValueError(f"Unknown job mode: {mode!r}") from e


@dataclass(frozen=True)
class DebitResult:
    """Outcome of an atomic debit.

    Attributes:
        success: Whether the units were taken.
        new_balance: Balance after the call (unchanged on failure, None for an unknown user).
        error: `USER_NOT_FOUND` or `INSUFFICIENT_CREDITS` on failure.
    """

    success: bool
    new_balance: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class LedgerEntry:
    user_id: str
    delta: int
    balance_after: int
    reason: str
    ref_type: str | None = None
    ref_id: str | None = None
    description: str | None = None


class SupportsCreditLedger(Protocol):
    """Protocol for the credit ledger."""

    def balance(self, user_id: str) -> int | None:
        """Current balance in units, or None for an unknown user."""
        ...

    def debit(
        self,
        user_id: str,
        units: int,
        reason: str,
        *,
        ref_type: str | None = None,
        ref_id: str | None = None,
        description: str | None = None,
    ) -> DebitResult:
        """Take `units` only if the balance covers them, atomically."""
        ...


@dataclass
class InMemoryCreditLedger:
    """Thread-safe in-process ledger with an append-only entry log."""

    balances: dict[str, int] = field(default_factory=dict)
    entries: list[LedgerEntry] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def balance(self, user_id: str) -> int | None:
        with self._lock:
            return self.balances.get(user_id)

    def credit(
        self,
        user_id: str,
        units: int,
        reason: str = "top_up",
        *,
        ref_type: str | None = None,
        ref_id: str | None = None,
        description: str | None = None,
    ) -> int:
        """Add units (creating the account if needed); returns the new balance."""
        if units <= 0:
            raise ValueError("units must be > 0")
        with self._lock:
            new_balance = self.balances.get(user_id, 0) + units
            self.balances[user_id] = new_balance
            self.entries.append(LedgerEntry(user_id, units, new_balance, reason, ref_type, ref_id, description))
        return new_balance

    def debit(
        self,
        user_id: str,
        units: int,
        reason: str,
        *,
        ref_type: str | None = None,
        ref_id: str | None = None,
        description: str | None = None,
    ) -> DebitResult:
        if units <= 0:
            raise ValueError("units must be > 0")
        with self._lock:
            current = self.balances.get(user_id)
            if current is None:
                return DebitResult(success=False, error=USER_NOT_FOUND)
            if current < units:
                return DebitResult(success=False, new_balance=current, error=INSUFFICIENT_CREDITS)
            new_balance = current - units
            self.balances[user_id] = new_balance
            self.entries.append(LedgerEntry(user_id, -units, new_balance, reason, ref_type, ref_id, description))
        LOG.info("Debited %s units from %s (%s), balance=%s", units, user_id, reason, new_balance)
        return DebitResult(success=True, new_balance=new_balance)
