"""Enumerations shared across Billbook modules.

Centralises domain constants so that the calculation engine, the ledger, the
workbook store and the CLI rely on a single source of truth for the values
that end up persisted in the workbook.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Flat GST slabs a line item may carry.
ALLOWED_TAX_RATES: frozenset[Decimal] = frozenset(
    Decimal(rate) for rate in ("0", "5", "18", "28")
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
WHOLE_UNIT = Decimal("1")


class DiscountType(str, Enum):
    """Enumerate how a line discount value is interpreted."""

    AMOUNT = "amount"
    PERCENTAGE = "percentage"


class PaymentStatus(str, Enum):
    """Enumerate the payment choices offered on an invoice."""

    FULLY_PAID = "fully_paid"
    PARTIALLY_PAID = "partially_paid"


class TransactionType(str, Enum):
    """Enumerate the transaction types recorded in the party ledger."""

    SALE = "sale"
    PURCHASE = "purchase"
    RETURN = "return"
    PAYMENT = "payment"


class TransactionKind(str, Enum):
    """Enumerate the stock movements that drive rate and stock policies.

    Returns are split by direction because the direction decides both the
    rate used to value the goods and whether stock leaves the shop.
    """

    PURCHASE = "purchase"
    SALE = "sale"
    RETURN_FROM_SELLER = "return_from_seller"
    RETURN_TO_BUYER = "return_to_buyer"
    PAYMENT = "payment"

    @property
    def ledger_type(self) -> TransactionType:
        if self in (TransactionKind.RETURN_FROM_SELLER, TransactionKind.RETURN_TO_BUYER):
            return TransactionType.RETURN
        return TransactionType(self.value)

    @property
    def stock_direction(self) -> int:
        """Sign applied to a line quantity when the transaction is committed."""
        if self in (TransactionKind.PURCHASE, TransactionKind.RETURN_FROM_SELLER):
            return 1
        if self in (TransactionKind.SALE, TransactionKind.RETURN_TO_BUYER):
            return -1
        return 0


class ReturnType(str, Enum):
    """Enumerate how the value of a return is handed back to the party."""

    ADJUST = "adjust"
    CASH = "cash"


class PartyRole(str, Enum):
    """Enumerate party roles.

    ``buyer`` parties are the ones the shop buys stock through; ``seller``
    parties are the accounts the shop sells to.
    """

    BUYER = "buyer"
    SELLER = "seller"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    ITEMS = "Items"
    PARTIES = "Parties"
    LEDGER_ENTRIES = "LedgerEntries"
    INVOICES = "Invoices"
    INVOICE_LINES = "InvoiceLines"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ALLOWED_TAX_RATES",
    "ZERO",
    "HUNDRED",
    "CENT",
    "WHOLE_UNIT",
    "DiscountType",
    "PaymentStatus",
    "TransactionType",
    "TransactionKind",
    "ReturnType",
    "PartyRole",
    "SheetName",
]
