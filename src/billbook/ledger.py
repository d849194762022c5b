"""Party balance ledger for Billbook.

The ledger is the only place allowed to move a party's running balance.
Every posting (an invoice, a payment or a settled return) produces exactly one
immutable :class:`LedgerEntry`, and replaying a party's entries from its
opening balance must always land on its current balance.

The module also hosts the return settlement resolver, which decides how much
of a return is absorbed by the party's balance and how much must be paid out
in cash, and the :class:`SubmissionGuard` that keeps ledger-mutating
submissions single-flight.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Tuple, Union

from . import log
from .billing import Invoice, Number, to_decimal
from .constants import ZERO, PartyRole, ReturnType, TransactionType
from .errors import (
    BusinessRuleViolation,
    LedgerInvariantViolation,
    SubmissionLocked,
    ValidationError,
)


@dataclass(frozen=True)
class Party:
    """Account the shop trades with."""

    party_id: str
    name: str
    role: PartyRole
    opening_balance: Decimal
    balance_amount: Decimal
    is_active: bool = True


@dataclass(frozen=True)
class LedgerEntry:
    """One append-only record of a balance-affecting event."""

    entry_id: str
    party_id: str
    transaction_type: TransactionType
    previous_balance: Decimal
    this_transaction_amount: Decimal
    paid_amount: Decimal
    balance_after: Decimal
    timestamp: datetime
    reference_id: Optional[str] = None


@dataclass(frozen=True)
class ReturnSettlement:
    """How the value of a return is split between balance and cash."""

    return_total: Decimal
    current_balance: Decimal
    adjustment_amount: Decimal
    cash_payment_required: Decimal
    return_type: ReturnType
    requires_confirmation: bool


@dataclass(frozen=True)
class PaymentPosting:
    """A payment received against a party's outstanding balance."""

    amount: Decimal


@dataclass(frozen=True)
class ReturnPosting:
    """A resolved return ready to be posted to the ledger."""

    settlement: ReturnSettlement


Posting = Union[Invoice, PaymentPosting, ReturnPosting]


def generate_id(*, prefix: str = "L", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier, ``"L"`` for
            ledger entries and ``"INV"`` for invoices.
        when (datetime | None): Timestamp used for the sortable part. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{suffix}``
            where the short random suffix keeps ids unique on coarse clocks.
    """
    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def resolve_return_settlement(
    return_total: Number,
    current_balance: Number,
    return_type: ReturnType = ReturnType.ADJUST,
) -> ReturnSettlement:
    """Decide how a return is handed back to the party.

    With ``adjust`` the return first pays down what the party owes; whatever
    exceeds the balance must be paid out in cash and therefore needs explicit
    confirmation before it is committed. With ``cash`` the whole return is
    paid out and the balance is left alone.

    Args:
        return_total: Value of the returned lines.
        current_balance: Party balance at the time of the return. Negative
            balances count as nothing owed.
        return_type (ReturnType): ``adjust`` or ``cash``.

    Returns:
        ReturnSettlement: The split, with ``requires_confirmation`` set when
            real cash changes hands on an ``adjust`` return.

    Raises:
        ValidationError: If ``return_total`` is negative.
    """
    total = to_decimal(return_total, field="return_total")
    balance = to_decimal(current_balance, field="current_balance")
    kind = ReturnType(return_type)
    if total < ZERO:
        raise ValidationError("Return total cannot be negative")

    if kind is ReturnType.CASH:
        return ReturnSettlement(
            return_total=total,
            current_balance=balance,
            adjustment_amount=ZERO,
            cash_payment_required=total,
            return_type=kind,
            requires_confirmation=False,
        )

    owed = max(balance, ZERO)
    adjustment = min(total, owed)
    cash = max(ZERO, total - owed)
    return ReturnSettlement(
        return_total=total,
        current_balance=balance,
        adjustment_amount=adjustment,
        cash_payment_required=cash,
        return_type=kind,
        requires_confirmation=cash > ZERO,
    )


class PartyLedger:
    """Running-balance state machine over an append-only entry history."""

    def __init__(self, entries: Iterable[LedgerEntry] = ()) -> None:
        self._entries: List[LedgerEntry] = list(entries)

    @property
    def entries(self) -> Tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    def history(self, party_id: str) -> List[LedgerEntry]:
        """Return a party's entries in timestamp order.

        Entries sharing a timestamp keep the order they were appended in.
        """
        own = [entry for entry in self._entries if entry.party_id == party_id]
        return sorted(own, key=lambda entry: entry.timestamp)

    def apply(
        self,
        party: Party,
        posting: Posting,
        *,
        timestamp: Optional[datetime] = None,
        reference_id: Optional[str] = None,
    ) -> Tuple[Party, LedgerEntry]:
        """Post ``posting`` to ``party`` and append the resulting entry.

        * Sale and purchase invoices add the unpaid part of *this* invoice:
          ``previous + invoice_total - paid_amount``. The previous balance
          folded into the invoice's grand total is already covered by
          ``paid_amount`` and is not subtracted again.
        * Payments reduce the balance, never below zero.
        * ``adjust`` returns reduce the balance by the settlement's
          adjustment; ``cash`` returns leave it unchanged.

        Args:
            party (Party): Party whose current ``balance_amount`` is the
                authoritative previous balance.
            posting: An :class:`~billbook.billing.Invoice`, a
                :class:`PaymentPosting` or a :class:`ReturnPosting`.
            timestamp (datetime | None): Entry time; defaults to now (UTC).
            reference_id (str | None): Invoice id the entry belongs to.

        Returns:
            tuple[Party, LedgerEntry]: The party carrying its new balance and
                the appended entry.

        Raises:
            BusinessRuleViolation: If the party is archived.
            ValidationError: If a payment amount is not positive.
            LedgerInvariantViolation: If the posting targets another party,
                was computed against a stale balance, or would drive an
                invoice balance below zero.
        """
        if not party.is_active:
            log.warning("Attempted ledger posting on archived party '%s'", party.party_id)
            raise BusinessRuleViolation(f"Party '{party.party_id}' is archived")

        previous = party.balance_amount

        if isinstance(posting, Invoice):
            transaction_type, amount, paid, balance_after = self._post_invoice(party, posting)
        elif isinstance(posting, PaymentPosting):
            if posting.amount <= ZERO:
                raise ValidationError("Payment amount must be greater than zero")
            transaction_type = TransactionType.PAYMENT
            amount = ZERO
            paid = posting.amount
            balance_after = max(ZERO, previous - paid)
        elif isinstance(posting, ReturnPosting):
            transaction_type, amount, paid, balance_after = self._post_return(party, posting.settlement)
        else:
            raise LedgerInvariantViolation(f"Unsupported ledger posting: {type(posting).__name__}")

        when = timestamp if timestamp is not None else datetime.now(UTC)
        entry = LedgerEntry(
            entry_id=generate_id(prefix="L", when=when),
            party_id=party.party_id,
            transaction_type=transaction_type,
            previous_balance=previous,
            this_transaction_amount=amount,
            paid_amount=paid,
            balance_after=balance_after,
            timestamp=when,
            reference_id=reference_id,
        )
        self._entries.append(entry)
        log.info(
            "Posted %s for party '%s': %s -> %s",
            transaction_type.value,
            party.party_id,
            previous,
            balance_after,
        )
        return replace(party, balance_amount=balance_after), entry

    def replay(self, party: Party) -> Decimal:
        """Fold a party's entries from its opening balance.

        Raises:
            LedgerInvariantViolation: If an entry does not chain from the
                previous one or the fold does not reproduce the party's
                current balance.
        """
        balance = party.opening_balance
        for entry in self.history(party.party_id):
            if entry.previous_balance != balance:
                log.error(
                    "Ledger entry '%s' starts at %s but the running balance is %s",
                    entry.entry_id,
                    entry.previous_balance,
                    balance,
                )
                raise LedgerInvariantViolation(f"Ledger entry '{entry.entry_id}' breaks the balance chain")
            balance = entry.balance_after
        if balance != party.balance_amount:
            log.error(
                "Ledger replay for party '%s' gives %s but the party holds %s",
                party.party_id,
                balance,
                party.balance_amount,
            )
            raise LedgerInvariantViolation(f"Ledger replay does not match balance of party '{party.party_id}'")
        return balance

    @staticmethod
    def _post_invoice(party: Party, invoice: Invoice) -> Tuple[TransactionType, Decimal, Decimal, Decimal]:
        if invoice.party_id != party.party_id:
            raise LedgerInvariantViolation(
                f"Invoice for party '{invoice.party_id}' posted to party '{party.party_id}'"
            )
        if invoice.kind not in (TransactionType.SALE, TransactionType.PURCHASE):
            raise LedgerInvariantViolation("Return invoices must be posted through a ReturnPosting")
        if invoice.previous_balance_snapshot != party.balance_amount:
            log.error(
                "Invoice for party '%s' was computed against balance %s but the party holds %s",
                party.party_id,
                invoice.previous_balance_snapshot,
                party.balance_amount,
            )
            raise LedgerInvariantViolation(f"Invoice for party '{party.party_id}' is stale")
        balance_after = party.balance_amount + invoice.invoice_total - invoice.paid_amount
        if balance_after < ZERO:
            log.error(
                "Invoice for party '%s' would leave balance %s",
                party.party_id,
                balance_after,
            )
            raise LedgerInvariantViolation(f"Invoice would drive party '{party.party_id}' balance negative")
        return invoice.kind, invoice.invoice_total, invoice.paid_amount, balance_after

    @staticmethod
    def _post_return(party: Party, settlement: ReturnSettlement) -> Tuple[TransactionType, Decimal, Decimal, Decimal]:
        previous = party.balance_amount
        if settlement.return_type is ReturnType.CASH:
            return TransactionType.RETURN, settlement.return_total, settlement.return_total, previous
        if settlement.current_balance != previous:
            log.error(
                "Return for party '%s' was settled against balance %s but the party holds %s",
                party.party_id,
                settlement.current_balance,
                previous,
            )
            raise LedgerInvariantViolation(f"Return settlement for party '{party.party_id}' is stale")
        balance_after = max(ZERO, previous - settlement.adjustment_amount)
        return TransactionType.RETURN, settlement.return_total, settlement.cash_payment_required, balance_after


class SubmissionGuard:
    """Single-flight gate around every operation that posts to the ledger.

    One guard is shared by the whole process: while any submission holds it,
    every other :meth:`acquire` fails immediately, whatever its key. Callers
    should treat :class:`SubmissionLocked` as "try again shortly".
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active_key: Optional[str] = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def active_key(self) -> Optional[str]:
        return self._active_key

    def acquire(self, key: str) -> None:
        if not self._lock.acquire(blocking=False):
            log.warning("Submission '%s' rejected while '%s' is in flight", key, self._active_key)
            raise SubmissionLocked(self._active_key)
        self._active_key = key
        log.debug("Submission guard acquired for '%s'", key)

    def release(self) -> None:
        if not self._lock.locked():
            return
        log.debug("Submission guard released for '%s'", self._active_key)
        self._active_key = None
        self._lock.release()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the guard for the duration of a ``with`` block."""
        self.acquire(key)
        try:
            yield
        finally:
            self.release()


__all__ = [
    "Party",
    "LedgerEntry",
    "ReturnSettlement",
    "PaymentPosting",
    "ReturnPosting",
    "Posting",
    "generate_id",
    "resolve_return_settlement",
    "PartyLedger",
    "SubmissionGuard",
]
