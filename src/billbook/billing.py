"""Invoice calculation engine for Billbook.

This module holds the pure half of the system: per-line discount and GST
math, the rate and stock policies keyed by transaction kind, and the
aggregation of line results into an :class:`Invoice`. Nothing here touches
the workbook or the ledger, so every function may be re-run on each edit of
a cart without accumulating state.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from . import log
from .constants import (
    ALLOWED_TAX_RATES,
    CENT,
    HUNDRED,
    WHOLE_UNIT,
    ZERO,
    DiscountType,
    PaymentStatus,
    TransactionKind,
    TransactionType,
)
from .errors import InsufficientStock, ValidationError


Number = Union[Decimal, int, str, float]


@dataclass(frozen=True)
class StockItem:
    """Item record as returned by the item lookup."""

    item_id: str
    product_name: str
    sale_rate: Decimal
    purchase_rate: Decimal
    tax_rate: Decimal
    available_quantity: int


@dataclass(frozen=True)
class LineItem:
    """One cart line, priced with the rate chosen for its transaction kind."""

    item_id: str
    quantity: int
    rate: Decimal
    discount_type: DiscountType = DiscountType.AMOUNT
    discount_value: Optional[Decimal] = None
    tax_rate: Decimal = ZERO
    available_quantity: int = 0


@dataclass(frozen=True)
class LineItemResult:
    """Derived amounts for a single :class:`LineItem`."""

    item_id: str
    item_total: Decimal
    discount_amount: Decimal
    total_after_discount: Decimal
    taxable_value: Decimal
    tax_amount: Decimal


@dataclass(frozen=True)
class Invoice:
    """Aggregated totals for one purchase, sale or return attempt."""

    kind: TransactionType
    party_id: str
    with_gst: bool
    line_results: Tuple[LineItemResult, ...]
    subtotal: Decimal
    tax_total: Decimal
    invoice_total: Decimal
    previous_balance_snapshot: Decimal
    previous_balance_paid: Decimal
    grand_total: Decimal
    payment_status: PaymentStatus
    paid_amount: Decimal
    balance_due: Decimal


@dataclass(frozen=True)
class StockCheck:
    """Verdict of the stock guard for one line."""

    item_id: str
    accepted: bool
    reason: Optional[str] = None


# Whether a transaction kind may request more than the available quantity.
OVERSELL_ALLOWED = {
    TransactionKind.PURCHASE: True,
    TransactionKind.SALE: False,
    TransactionKind.RETURN_FROM_SELLER: True,
    TransactionKind.RETURN_TO_BUYER: False,
}


def to_decimal(value: Optional[Number], *, field: str = "value") -> Decimal:
    """Coerce user or workbook input into a :class:`Decimal`.

    Floats go through ``str`` so ``0.1`` stays ``0.1`` rather than its binary
    approximation. ``None`` and empty strings become zero.

    Raises:
        ValidationError: If ``value`` cannot be read as a number.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} is not a number: {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite: {value!r}")
    return result


def quantize_money(amount: Decimal) -> Decimal:
    """Round an amount to paise for display or persistence."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def round_invoice_amount(kind: TransactionType, amount: Decimal) -> Decimal:
    """Apply the per-kind rounding policy to an invoice-level amount.

    Purchase payments are entered in whole rupees, so purchase totals are
    rounded to the nearest whole unit. Sales and returns keep paise.
    """
    if kind is TransactionType.PURCHASE:
        return amount.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def rate_selector(kind: TransactionKind, item: StockItem) -> Decimal:
    """Return the rate used to value ``item`` for a transaction of ``kind``.

    Goods moving between the shop and a buyer party are valued at the
    purchase rate; goods moving between the shop and a seller party are
    valued at the sale rate.

    Args:
        kind (TransactionKind): Transaction the line belongs to.
        item (StockItem): Item record from the item lookup.

    Returns:
        Decimal: ``purchase_rate`` or ``sale_rate`` for the item.

    Raises:
        ValidationError: For payment transactions, which carry no goods.
    """
    kind = TransactionKind(kind)
    if kind in (TransactionKind.PURCHASE, TransactionKind.RETURN_TO_BUYER):
        return item.purchase_rate
    if kind in (TransactionKind.SALE, TransactionKind.RETURN_FROM_SELLER):
        return item.sale_rate
    raise ValidationError(f"Transaction kind '{kind.value}' has no line items")


def build_line_item(
    kind: TransactionKind,
    item: StockItem,
    quantity: int,
    *,
    discount_type: DiscountType = DiscountType.AMOUNT,
    discount_value: Optional[Number] = None,
    rate: Optional[Number] = None,
) -> LineItem:
    """Assemble a :class:`LineItem` for ``item`` priced via :func:`rate_selector`.

    ``rate`` overrides the selected rate, for example when a purchase is
    entered at a negotiated price.
    """
    selected = to_decimal(rate, field="rate") if rate is not None else rate_selector(kind, item)
    line = LineItem(
        item_id=item.item_id,
        quantity=quantity,
        rate=selected,
        discount_type=DiscountType(discount_type),
        discount_value=None if discount_value is None else to_decimal(discount_value, field="discount_value"),
        tax_rate=item.tax_rate,
        available_quantity=item.available_quantity,
    )
    validate_line_item(line)
    return line


def validate_line_item(line: LineItem) -> None:
    """Reject line input that cannot be priced.

    Raises:
        ValidationError: If the quantity is not a positive integer, the rate
            or discount is negative, or the tax rate is not one of the
            allowed GST slabs. Stock on hand is left to :func:`check_stock`.
    """
    if isinstance(line.quantity, bool) or not isinstance(line.quantity, int):
        log.error("Quantity validation failed for item '%s': %r", line.item_id, line.quantity)
        raise ValidationError(f"Quantity must be a whole number for item '{line.item_id}'")
    if line.quantity <= 0:
        log.error("Quantity validation failed for item '%s': %s", line.item_id, line.quantity)
        raise ValidationError(f"Quantity must be greater than zero for item '{line.item_id}'")
    if line.rate < ZERO:
        log.error("Rate validation failed for item '%s': %s", line.item_id, line.rate)
        raise ValidationError(f"Rate must be zero or positive for item '{line.item_id}'")
    if line.discount_value is not None and line.discount_value < ZERO:
        log.error("Discount validation failed for item '%s': %s", line.item_id, line.discount_value)
        raise ValidationError(f"Discount must be zero or positive for item '{line.item_id}'")
    if line.tax_rate not in ALLOWED_TAX_RATES:
        log.error("Tax rate validation failed for item '%s': %s", line.item_id, line.tax_rate)
        raise ValidationError(f"Unsupported tax rate {line.tax_rate} for item '{line.item_id}'")


def compute_line_item(line: LineItem, with_gst: bool) -> LineItemResult:
    """Compute the discount and GST split for a single line.

    The discount is clamped so it never exceeds the line total. With GST
    enabled the discounted total is treated as tax-inclusive and the taxable
    value is extracted backwards as ``total / (1 + rate/100)``; without GST
    the whole discounted total is taxable and no tax is charged.

    Amounts are left unrounded so ``taxable_value + tax_amount`` always equals
    ``total_after_discount``; use :func:`quantize_money` for display.

    Args:
        line (LineItem): Cart line to price.
        with_gst (bool): Invoice-level GST toggle.

    Returns:
        LineItemResult: Derived amounts for the line.

    Raises:
        ValidationError: If the line fails :func:`validate_line_item`.
    """
    validate_line_item(line)

    item_total = line.rate * line.quantity
    discount_value = line.discount_value if line.discount_value is not None else ZERO
    if DiscountType(line.discount_type) is DiscountType.PERCENTAGE:
        discount_amount = item_total * discount_value / HUNDRED
    else:
        discount_amount = discount_value
    discount_amount = min(discount_amount, item_total)
    total_after_discount = item_total - discount_amount

    if with_gst and line.tax_rate > ZERO:
        taxable_value = total_after_discount / (1 + line.tax_rate / HUNDRED)
        tax_amount = total_after_discount - taxable_value
    else:
        taxable_value = total_after_discount
        tax_amount = ZERO

    return LineItemResult(
        item_id=line.item_id,
        item_total=item_total,
        discount_amount=discount_amount,
        total_after_discount=total_after_discount,
        taxable_value=taxable_value,
        tax_amount=tax_amount,
    )


def compute_line_items(lines: Iterable[LineItem], with_gst: bool) -> List[LineItemResult]:
    return [compute_line_item(line, with_gst) for line in lines]


def check_stock(line: LineItem, kind: TransactionKind) -> StockCheck:
    """Check a line's quantity against the oversell policy for ``kind``.

    Purchases and returns coming back from a seller add stock, so they are
    accepted even when the item has no stock on hand. Sales and returns
    going out to a buyer must not exceed the available quantity.

    Raises:
        ValidationError: For payment transactions.
    """
    kind = TransactionKind(kind)
    if kind not in OVERSELL_ALLOWED:
        raise ValidationError(f"Transaction kind '{kind.value}' has no line items")
    if OVERSELL_ALLOWED[kind] or line.quantity <= line.available_quantity:
        return StockCheck(item_id=line.item_id, accepted=True)
    reason = (
        f"Requested {line.quantity} of item '{line.item_id}' but only "
        f"{line.available_quantity} available"
    )
    log.warning("Stock check rejected line for %s: %s", kind.value, reason)
    return StockCheck(item_id=line.item_id, accepted=False, reason=reason)


def require_stock(line: LineItem, kind: TransactionKind) -> None:
    """Raise :class:`InsufficientStock` when :func:`check_stock` rejects ``line``."""
    verdict = check_stock(line, kind)
    if not verdict.accepted:
        raise InsufficientStock(verdict.reason or "Insufficient stock", item_ids=[line.item_id])


def partition_lines(
    lines: Iterable[LineItem], kind: TransactionKind
) -> Tuple[List[LineItem], List[StockCheck]]:
    """Split a cart into lines that pass the stock guard and rejected verdicts.

    Each line is judged on its own, so one out-of-stock line never blocks
    the rest of the cart. The caller decides whether rejections abort the
    submission.
    """
    accepted: List[LineItem] = []
    rejected: List[StockCheck] = []
    for line in lines:
        verdict = check_stock(line, kind)
        if verdict.accepted:
            accepted.append(line)
        else:
            rejected.append(verdict)
    return accepted, rejected


def _invoice_type(kind: Union[TransactionKind, TransactionType, str]) -> TransactionType:
    if isinstance(kind, TransactionKind):
        resolved = kind.ledger_type
    else:
        try:
            resolved = TransactionType(kind)
        except ValueError:
            resolved = TransactionKind(kind).ledger_type
    if resolved is TransactionType.PAYMENT:
        raise ValidationError("Payments do not produce invoices")
    return resolved


def compute_invoice(
    kind: Union[TransactionKind, TransactionType, str],
    party_id: str,
    line_results: Sequence[LineItemResult],
    *,
    with_gst: bool,
    previous_balance: Number = ZERO,
    payment_status: PaymentStatus = PaymentStatus.FULLY_PAID,
    paid_amount: Optional[Number] = None,
) -> Invoice:
    """Aggregate line results into an :class:`Invoice`.

    Any positive previous balance is folded into the grand total in full.
    A fully paid invoice pays exactly the grand total; a partial payment is
    clamped into ``[0, grand_total]``. Purchase invoices round
    ``invoice_total`` and ``paid_amount`` to whole units before the balance
    is worked out, while sales and returns keep two decimals.

    Args:
        kind: Invoice kind, either a ledger ``TransactionType`` or the
            ``TransactionKind`` of the cart.
        party_id (str): Party the invoice is raised against.
        line_results (Sequence[LineItemResult]): Output of
            :func:`compute_line_item` for every accepted line.
        with_gst (bool): Invoice-level GST toggle used for the line results.
        previous_balance: Party balance at preview time.
        payment_status (PaymentStatus): Payment choice on the invoice.
        paid_amount: User-entered amount; only read for partial payments.

    Returns:
        Invoice: Fully aggregated invoice.

    Raises:
        ValidationError: For payment kinds or an empty cart.
    """
    invoice_kind = _invoice_type(kind)
    status = PaymentStatus(payment_status)
    results = tuple(line_results)
    if not results:
        raise ValidationError("An invoice needs at least one line item")

    subtotal = sum((result.taxable_value for result in results), ZERO)
    tax_total = sum((result.tax_amount for result in results), ZERO)
    raw_total = subtotal + tax_total if with_gst else subtotal
    invoice_total = round_invoice_amount(invoice_kind, raw_total)

    previous_balance_snapshot = to_decimal(previous_balance, field="previous_balance")
    previous_balance_paid = previous_balance_snapshot if previous_balance_snapshot > ZERO else ZERO
    grand_total = invoice_total + previous_balance_paid

    if status is PaymentStatus.FULLY_PAID:
        paid = grand_total
    else:
        entered = round_invoice_amount(invoice_kind, to_decimal(paid_amount, field="paid_amount"))
        paid = min(max(entered, ZERO), grand_total)

    invoice = Invoice(
        kind=invoice_kind,
        party_id=party_id,
        with_gst=with_gst,
        line_results=results,
        subtotal=subtotal,
        tax_total=tax_total,
        invoice_total=invoice_total,
        previous_balance_snapshot=previous_balance_snapshot,
        previous_balance_paid=previous_balance_paid,
        grand_total=grand_total,
        payment_status=status,
        paid_amount=paid,
        balance_due=grand_total - paid,
    )
    log.debug(
        "Computed %s invoice for party '%s': total=%s grand=%s paid=%s due=%s",
        invoice_kind.value,
        party_id,
        invoice.invoice_total,
        invoice.grand_total,
        invoice.paid_amount,
        invoice.balance_due,
    )
    return invoice


def validate_paid_amount(paid_amount: Number, grand_total: Decimal) -> Decimal:
    """Submit-time check on a user-entered paid amount.

    The preview clamps silently; submitting a value outside
    ``[0, grand_total]`` is refused instead.
    """
    amount = to_decimal(paid_amount, field="paid_amount")
    if amount < ZERO:
        raise ValidationError("Paid amount cannot be negative")
    if amount > grand_total:
        raise ValidationError(
            f"Paid amount ({quantize_money(amount)}) cannot exceed grand total ({quantize_money(grand_total)})"
        )
    return amount


def tax_breakdown(invoice: Invoice) -> dict[str, Decimal]:
    """Split the invoice tax into equal central and state halves."""
    if not invoice.with_gst:
        return {"cgst": ZERO, "sgst": ZERO, "total_tax": ZERO}
    half = quantize_money(invoice.tax_total / 2)
    return {"cgst": half, "sgst": half, "total_tax": quantize_money(invoice.tax_total)}


__all__ = [
    "StockItem",
    "LineItem",
    "LineItemResult",
    "Invoice",
    "StockCheck",
    "OVERSELL_ALLOWED",
    "to_decimal",
    "quantize_money",
    "round_invoice_amount",
    "rate_selector",
    "build_line_item",
    "validate_line_item",
    "compute_line_item",
    "compute_line_items",
    "check_stock",
    "require_stock",
    "partition_lines",
    "compute_invoice",
    "validate_paid_amount",
    "tax_breakdown",
]
