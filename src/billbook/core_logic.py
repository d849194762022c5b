"""Business logic layer for Billbook.

This module wires the pure calculation engine and the party ledger to the
workbook store. Each ``record_*`` function is one "submit" action: it looks up
the party and items, prices the cart, runs the stock guard, resolves return
settlements, and only then, while holding the process-wide
:class:`~billbook.ledger.SubmissionGuard`, posts to the ledger and writes the
results back through the data access layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .billing import (
    Invoice,
    LineItem,
    LineItemResult,
    Number,
    StockCheck,
    StockItem,
    build_line_item,
    compute_invoice,
    compute_line_items,
    partition_lines,
    require_stock,
    round_invoice_amount,
    to_decimal,
    validate_paid_amount,
)
from .constants import (
    ALLOWED_TAX_RATES,
    EXPECTED_SCHEMA_VERSION,
    ZERO,
    DiscountType,
    PartyRole,
    PaymentStatus,
    ReturnType,
    TransactionKind,
    TransactionType,
)
from .errors import (
    BusinessRuleViolation,
    ConfirmationRequired,
    InsufficientStock,
    MissingReferenceError,
    ValidationError,
)
from .ledger import (
    LedgerEntry,
    Party,
    PartyLedger,
    PaymentPosting,
    ReturnPosting,
    ReturnSettlement,
    SubmissionGuard,
    generate_id,
    resolve_return_settlement,
)


# Party role each kind of goods movement must be posted to.
REQUIRED_ROLE = {
    TransactionKind.PURCHASE: PartyRole.BUYER,
    TransactionKind.RETURN_TO_BUYER: PartyRole.BUYER,
    TransactionKind.SALE: PartyRole.SELLER,
    TransactionKind.RETURN_FROM_SELLER: PartyRole.SELLER,
}

RETURN_DIRECTIONS = (TransactionKind.RETURN_FROM_SELLER, TransactionKind.RETURN_TO_BUYER)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and the shared submission guard."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    guard: SubmissionGuard = field(default_factory=SubmissionGuard, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class LineRequest:
    """One cart line as entered by the user."""

    item_id: str
    quantity: int
    discount_type: DiscountType = DiscountType.AMOUNT
    discount_value: Optional[Decimal] = None
    rate: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling goods to a seller party."""

    party_id: str
    lines: Sequence[LineRequest]
    with_gst: bool
    payment_status: PaymentStatus = PaymentStatus.FULLY_PAID
    paid_amount: Optional[Decimal] = None
    skip_unavailable: bool = False
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for taking stock in through a buyer party."""

    party_id: str
    lines: Sequence[LineRequest]
    with_gst: bool
    payment_status: PaymentStatus = PaymentStatus.FULLY_PAID
    paid_amount: Optional[Decimal] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for returning goods in either direction."""

    party_id: str
    direction: TransactionKind
    lines: Sequence[LineRequest]
    return_type: ReturnType = ReturnType.ADJUST
    with_gst: bool = False
    cash_confirmed: bool = False
    skip_unavailable: bool = False
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording a payment against a party balance."""

    party_id: str
    amount: Decimal
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class CommitResult:
    """Everything a committed submission produced."""

    party: Party
    entry: LedgerEntry
    invoice_id: Optional[str] = None
    invoice: Optional[Invoice] = None
    settlement: Optional[ReturnSettlement] = None
    rejected: Tuple[StockCheck, ...] = ()


@dataclass(frozen=True)
class InvoicePreview:
    """Priced cart that has not been committed."""

    invoice: Invoice
    rejected: Tuple[StockCheck, ...] = ()
    settlement: Optional[ReturnSettlement] = None


@dataclass(frozen=True)
class ItemSales:
    """Sales of one item summed over committed sale invoices."""

    item_id: str
    quantity: int
    taxable_value: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can invalidate without checking.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cache(
    context: RuntimeContext,
    name: str,
    loader: Callable[[Workbook], Iterable[Any]],
    key: Optional[Callable[[Any], str]] = None,
) -> Dict[str, Any]:
    """Populate a cache bucket with ``all`` rows and an optional ``by_id`` map."""

    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        rows = list(loader(context.workbook))
        bucket["all"] = rows
        if key is not None:
            bucket["by_id"] = {key(row): row for row in rows}
        log.debug("Populated %s cache with %d entries", name, len(rows))
    return bucket


def _items_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "items", data_manager.iter_items, key=lambda item: item.item_id)


def _parties_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "parties", data_manager.iter_parties, key=lambda party: party.party_id)


def _ledger_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "ledger", data_manager.iter_ledger_entries)


def _invoices_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "invoices", data_manager.iter_invoices, key=lambda row: row.invoice_id)


def _invoice_lines_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "invoice_lines", data_manager.iter_invoice_lines)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    guard: Optional[SubmissionGuard] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the working
            directory.
        guard (SubmissionGuard | None): Guard to share with an existing
            context. A fresh guard is created when omitted.

    Returns:
        RuntimeContext: Context ready for the workflow functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    if guard is None:
        return RuntimeContext(settings=settings, workbook=workbook)
    return RuntimeContext(settings=settings, workbook=workbook, guard=guard)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with another schema version.

    Raises:
        RuntimeError: If ``config.ini`` declares a schema version other than
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, dropping unsaved edits but keeping the same guard."""
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, guard=context.guard)


def list_items(context: RuntimeContext) -> List[StockItem]:
    return list(_items_cache(context)["all"])


def list_parties(context: RuntimeContext, *, include_inactive: bool = False) -> List[Party]:
    """Return parties in sheet order, hiding archived ones unless asked."""
    parties = _parties_cache(context)["all"]
    if include_inactive:
        return list(parties)
    return [party for party in parties if party.is_active]


def list_ledger_entries(context: RuntimeContext, party_id: Optional[str] = None) -> List[LedgerEntry]:
    """Return ledger entries, optionally only those of ``party_id``, in timestamp order."""
    ledger = PartyLedger(_ledger_cache(context)["all"])
    if party_id is None:
        return sorted(ledger.entries, key=lambda entry: entry.timestamp)
    return ledger.history(party_id)


def list_invoices(context: RuntimeContext) -> List[data_manager.InvoiceRow]:
    return list(_invoices_cache(context)["all"])


def list_invoice_lines(context: RuntimeContext, invoice_id: Optional[str] = None) -> List[data_manager.InvoiceLineRow]:
    """Return committed cart lines, optionally only those of ``invoice_id``."""
    rows = _invoice_lines_cache(context)["all"]
    if invoice_id is None:
        return list(rows)
    return [row for row in rows if row.invoice_id == invoice_id]


def get_item(context: RuntimeContext, item_id: str) -> StockItem:
    """Resolve an item by its identifier.

    Raises:
        MissingReferenceError: If ``item_id`` is absent from the workbook.
    """
    try:
        return _items_cache(context)["by_id"][item_id]
    except KeyError as exc:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}") from exc


def get_party(context: RuntimeContext, party_id: str) -> Party:
    """Resolve a party by its identifier.

    Raises:
        MissingReferenceError: If ``party_id`` is absent from the workbook.
    """
    try:
        return _parties_cache(context)["by_id"][party_id]
    except KeyError as exc:
        log.warning("Party lookup failed for id '%s'", party_id)
        raise MissingReferenceError(f"Unknown party id: {party_id}") from exc


def add_party(
    context: RuntimeContext,
    *,
    party_id: str,
    name: str,
    role: PartyRole,
    opening_balance: Number = ZERO,
) -> Party:
    """Register a new party whose running balance starts at ``opening_balance``.

    Raises:
        BusinessRuleViolation: If the identifier is already taken.
        ValidationError: If the opening balance is negative.
    """
    if party_id in _parties_cache(context)["by_id"]:
        raise BusinessRuleViolation(f"Party '{party_id}' already exists")
    opening = to_decimal(opening_balance, field="opening_balance")
    if opening < ZERO:
        raise ValidationError("Opening balance must be zero or positive")

    party = Party(
        party_id=party_id,
        name=name,
        role=PartyRole(role),
        opening_balance=opening,
        balance_amount=opening,
    )
    data_manager.append_party(context.workbook, party)
    _invalidate_cache(context, "parties")
    log.info("Added %s party '%s' with opening balance %s", party.role.value, party_id, opening)
    return party


def archive_party(context: RuntimeContext, party_id: str) -> Party:
    """Soft-archive a party; its ledger history stays in place."""
    party = get_party(context, party_id)
    data_manager.update_party(context.workbook, party_id, field_values={"IsActive": False})
    _invalidate_cache(context, "parties")
    log.info("Archived party '%s'", party_id)
    return Party(
        party_id=party.party_id,
        name=party.name,
        role=party.role,
        opening_balance=party.opening_balance,
        balance_amount=party.balance_amount,
        is_active=False,
    )


def add_item(
    context: RuntimeContext,
    *,
    item_id: str,
    product_name: str,
    sale_rate: Number,
    purchase_rate: Number,
    tax_rate: Number = ZERO,
    available_quantity: int = 0,
) -> StockItem:
    """Register a new stock item.

    Raises:
        BusinessRuleViolation: If the identifier is already taken.
        ValidationError: If a rate is negative, the tax slab is unsupported
            or the quantity is negative.
    """
    if item_id in _items_cache(context)["by_id"]:
        raise BusinessRuleViolation(f"Item '{item_id}' already exists")
    item = StockItem(
        item_id=item_id,
        product_name=product_name,
        sale_rate=to_decimal(sale_rate, field="sale_rate"),
        purchase_rate=to_decimal(purchase_rate, field="purchase_rate"),
        tax_rate=to_decimal(tax_rate, field="tax_rate"),
        available_quantity=int(available_quantity),
    )
    if item.sale_rate < ZERO or item.purchase_rate < ZERO:
        raise ValidationError("Rates must be zero or positive")
    if item.tax_rate not in ALLOWED_TAX_RATES:
        raise ValidationError(f"Unsupported tax rate {item.tax_rate}")
    if item.available_quantity < 0:
        raise ValidationError("Available quantity cannot be negative")

    data_manager.append_item(context.workbook, item)
    _invalidate_cache(context, "items")
    log.info("Added item '%s' (%s)", item_id, product_name)
    return item


def calculate_stock(context: RuntimeContext) -> Dict[str, int]:
    """Map every item id to its available quantity."""
    return {item.item_id: item.available_quantity for item in list_items(context)}


def calculate_outstanding_balances(context: RuntimeContext) -> Dict[str, Decimal]:
    """Map every active party that still owes money to its balance."""
    balances = {
        party.party_id: party.balance_amount
        for party in list_parties(context)
        if party.balance_amount > ZERO
    }
    log.debug("Calculated outstanding balances for %d parties", len(balances))
    return balances


def verify_party_ledger(context: RuntimeContext, party_id: str) -> Decimal:
    """Replay a party's ledger and confirm it reproduces the stored balance.

    Raises:
        LedgerInvariantViolation: When the replay disagrees with the party.
    """
    party = get_party(context, party_id)
    return PartyLedger(_ledger_cache(context)["all"]).replay(party)


def calculate_item_sales(
    context: RuntimeContext,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    with_gst: Optional[bool] = None,
) -> Dict[str, ItemSales]:
    """Sum committed sale lines per item.

    Only ``sale`` invoices count; returns are reported separately through
    the invoice list. Amounts come from the stored cart lines, so they are
    rounded to the paisa line by line.

    Args:
        context (RuntimeContext): Runtime context providing workbook access
            and caches.
        start (datetime | None): Include invoices at or after this moment.
        end (datetime | None): Include invoices strictly before this moment.
        with_gst (bool | None): Only GST (``True``) or non-GST (``False``)
            invoices; ``None`` includes both.

    Returns:
        dict[str, ItemSales]: Totals keyed by item id in order of first sale.
    """
    included = set()
    for row in list_invoices(context):
        if row.kind != TransactionKind.SALE.value:
            continue
        if with_gst is not None and row.with_gst is not with_gst:
            continue
        when = datetime.fromisoformat(row.timestamp_iso)
        if (start is not None and when < start) or (end is not None and when >= end):
            continue
        included.add(row.invoice_id)

    totals: Dict[str, ItemSales] = {}
    for line in list_invoice_lines(context):
        if line.invoice_id not in included:
            continue
        current = totals.get(line.item_id) or ItemSales(line.item_id, 0, ZERO, ZERO, ZERO)
        totals[line.item_id] = ItemSales(
            item_id=line.item_id,
            quantity=current.quantity + line.quantity,
            taxable_value=current.taxable_value + line.taxable_value,
            tax_amount=current.tax_amount + line.tax_amount,
            total_amount=current.total_amount + line.total_after_discount,
        )
    log.debug("Calculated item sales for %d items across %d invoices", len(totals), len(included))
    return totals


def _require_party(context: RuntimeContext, party_id: str, kind: TransactionKind) -> Party:
    party = get_party(context, party_id)
    if not party.is_active:
        log.warning("Attempted %s on archived party '%s'", kind.value, party_id)
        raise BusinessRuleViolation(f"Party '{party_id}' is archived")
    required = REQUIRED_ROLE.get(kind)
    if required is not None and party.role is not required:
        log.error(
            "Party '%s' has role '%s' but %s requires '%s'",
            party_id,
            party.role.value,
            kind.value,
            required.value,
        )
        raise BusinessRuleViolation(
            f"{kind.value} requires a {required.value} party, '{party_id}' is a {party.role.value}"
        )
    return party


def _prepare_lines(
    context: RuntimeContext,
    kind: TransactionKind,
    requests: Sequence[LineRequest],
    *,
    skip_unavailable: bool,
) -> Tuple[List[LineItem], List[StockCheck]]:
    """Price each requested line and run the stock guard over the cart.

    Rejected lines raise :class:`InsufficientStock` unless
    ``skip_unavailable`` is set, in which case they are dropped and reported
    back to the caller.
    """
    seen: set[str] = set()
    lines: List[LineItem] = []
    for request in requests:
        if request.item_id in seen:
            raise ValidationError(f"Item '{request.item_id}' appears more than once in the cart")
        seen.add(request.item_id)
        item = get_item(context, request.item_id)
        lines.append(
            build_line_item(
                kind,
                item,
                request.quantity,
                discount_type=request.discount_type,
                discount_value=request.discount_value,
                rate=request.rate,
            )
        )

    accepted, rejected = partition_lines(lines, kind)
    if rejected and not skip_unavailable:
        raise InsufficientStock(
            "; ".join(check.reason or check.item_id for check in rejected),
            item_ids=[check.item_id for check in rejected],
        )
    if rejected:
        log.warning(
            "Dropping %d unavailable line(s) from %s: %s",
            len(rejected),
            kind.value,
            ", ".join(check.item_id for check in rejected),
        )
    return accepted, rejected


def preview_invoice(
    context: RuntimeContext,
    kind: TransactionKind,
    party_id: str,
    requests: Sequence[LineRequest],
    *,
    with_gst: bool,
    payment_status: PaymentStatus = PaymentStatus.FULLY_PAID,
    paid_amount: Optional[Number] = None,
    return_type: ReturnType = ReturnType.ADJUST,
) -> InvoicePreview:
    """Price a cart against the party's current balance without committing.

    Out-of-stock lines are left out of the invoice and returned alongside it.
    Returns carry no payment of their own; instead the preview resolves how
    the return would settle against the balance, including whether a cash
    payout needs confirmation before :func:`record_return` accepts it.
    """
    kind = TransactionKind(kind)
    party = _require_party(context, party_id, kind)
    lines, rejected = _prepare_lines(context, kind, requests, skip_unavailable=True)
    results = compute_line_items(lines, with_gst)
    if kind in RETURN_DIRECTIONS:
        invoice = compute_invoice(TransactionType.RETURN, party.party_id, results, with_gst=with_gst)
        settlement = resolve_return_settlement(invoice.invoice_total, party.balance_amount, return_type)
        return InvoicePreview(invoice=invoice, rejected=tuple(rejected), settlement=settlement)
    invoice = compute_invoice(
        kind,
        party.party_id,
        results,
        with_gst=with_gst,
        previous_balance=party.balance_amount,
        payment_status=payment_status,
        paid_amount=paid_amount,
    )
    return InvoicePreview(invoice=invoice, rejected=tuple(rejected))


def _invoice_row(
    invoice_id: str,
    timestamp: datetime,
    kind: TransactionKind,
    invoice: Invoice,
    *,
    notes: Optional[str],
    settlement: Optional[ReturnSettlement] = None,
) -> data_manager.InvoiceRow:
    if settlement is None:
        payment_status: Optional[str] = invoice.payment_status.value
        paid_amount = invoice.paid_amount
        balance_due = invoice.balance_due
        return_type = None
    else:
        payment_status = None
        paid_amount = settlement.cash_payment_required
        balance_due = ZERO
        return_type = settlement.return_type.value
    return data_manager.InvoiceRow(
        invoice_id=invoice_id,
        timestamp_iso=timestamp.isoformat(),
        kind=kind.value,
        party_id=invoice.party_id,
        with_gst=invoice.with_gst,
        line_count=len(invoice.line_results),
        subtotal=invoice.subtotal,
        tax_total=invoice.tax_total,
        invoice_total=invoice.invoice_total,
        previous_balance_paid=invoice.previous_balance_paid,
        grand_total=invoice.grand_total,
        payment_status=payment_status,
        paid_amount=paid_amount,
        balance_due=balance_due,
        return_type=return_type,
        notes=notes,
    )


def _invoice_line_rows(
    invoice_id: str,
    lines: Sequence[LineItem],
    results: Sequence[LineItemResult],
) -> List[data_manager.InvoiceLineRow]:
    return [
        data_manager.InvoiceLineRow(
            invoice_id=invoice_id,
            line_number=number,
            item_id=line.item_id,
            quantity=line.quantity,
            rate=line.rate,
            discount_type=DiscountType(line.discount_type).value,
            discount_value=line.discount_value,
            tax_rate=line.tax_rate,
            item_total=result.item_total,
            discount_amount=result.discount_amount,
            total_after_discount=result.total_after_discount,
            taxable_value=result.taxable_value,
            tax_amount=result.tax_amount,
        )
        for number, (line, result) in enumerate(zip(lines, results), start=1)
    ]


def _stock_levels(context: RuntimeContext, kind: TransactionKind, lines: Iterable[LineItem]) -> Dict[str, int]:
    """Re-check each line against the item row and return the quantities to write."""
    direction = kind.stock_direction
    levels: Dict[str, int] = {}
    for line in lines:
        item = get_item(context, line.item_id)
        require_stock(replace(line, available_quantity=item.available_quantity), kind)
        levels[line.item_id] = item.available_quantity + direction * line.quantity
        log.debug("Stock for item '%s': %s -> %s", line.item_id, item.available_quantity, levels[line.item_id])
    return levels


def _commit(
    context: RuntimeContext,
    kind: TransactionKind,
    party_id: str,
    posting: Any,
    *,
    timestamp: datetime,
    invoice_id: Optional[str] = None,
    invoice_row: Optional[data_manager.InvoiceRow] = None,
    lines: Sequence[LineItem] = (),
    line_rows: Sequence[data_manager.InvoiceLineRow] = (),
) -> Tuple[Party, LedgerEntry]:
    """Post to the ledger and write every resulting row while holding the guard.

    The party and item rows are read again under the guard, so a posting
    priced against a balance or stock level that has since changed is
    refused before anything is written. A failure during the writes
    themselves leaves the in-memory workbook partly updated; call
    :func:`refresh_context` instead of persisting it.

    Raises:
        LedgerInvariantViolation: If the posting was computed against a
            balance the party no longer holds.
        InsufficientStock: If outbound stock no longer covers a line.
        BusinessRuleViolation: If the party was archived in the meantime.
    """
    with context.guard.hold(f"{kind.value}:{party_id}"):
        _invalidate_cache(context, "items", "parties", "ledger")
        current = _require_party(context, party_id, kind)
        stock_levels = _stock_levels(context, kind, lines)
        ledger = PartyLedger(_ledger_cache(context)["all"])
        updated, entry = ledger.apply(current, posting, timestamp=timestamp, reference_id=invoice_id)

        if invoice_row is not None:
            data_manager.append_invoice(context.workbook, invoice_row)
        for row in line_rows:
            data_manager.append_invoice_line(context.workbook, row)
        data_manager.append_ledger_entry(context.workbook, entry)
        data_manager.update_party(
            context.workbook,
            party_id,
            field_values={"BalanceAmount": updated.balance_amount},
        )
        for item_id, quantity in stock_levels.items():
            data_manager.update_item(context.workbook, item_id, field_values={"AvailableQuantity": quantity})
        _invalidate_cache(context, "items", "parties", "ledger", "invoices", "invoice_lines")
    return updated, entry


def _record_invoice(
    context: RuntimeContext,
    kind: TransactionKind,
    command: SaleCommand | PurchaseCommand,
    *,
    skip_unavailable: bool,
) -> CommitResult:
    party = _require_party(context, command.party_id, kind)
    lines, rejected = _prepare_lines(context, kind, command.lines, skip_unavailable=skip_unavailable)
    invoice = compute_invoice(
        kind,
        party.party_id,
        compute_line_items(lines, command.with_gst),
        with_gst=command.with_gst,
        previous_balance=party.balance_amount,
        payment_status=command.payment_status,
        paid_amount=command.paid_amount,
    )
    if invoice.payment_status is PaymentStatus.PARTIALLY_PAID and command.paid_amount is not None:
        entered = round_invoice_amount(invoice.kind, to_decimal(command.paid_amount, field="paid_amount"))
        validate_paid_amount(entered, invoice.grand_total)

    timestamp = _resolve_timestamp(command.timestamp)
    invoice_id = generate_id(prefix="INV", when=timestamp)
    updated, entry = _commit(
        context,
        kind,
        party.party_id,
        invoice,
        timestamp=timestamp,
        invoice_id=invoice_id,
        invoice_row=_invoice_row(invoice_id, timestamp, kind, invoice, notes=command.notes),
        lines=lines,
        line_rows=_invoice_line_rows(invoice_id, lines, invoice.line_results),
    )
    log.info(
        "Recorded %s invoice '%s' for party '%s' (total=%s, paid=%s, due=%s)",
        kind.value,
        invoice_id,
        party.party_id,
        invoice.invoice_total,
        invoice.paid_amount,
        invoice.balance_due,
    )
    return CommitResult(
        party=updated,
        entry=entry,
        invoice_id=invoice_id,
        invoice=invoice,
        rejected=tuple(rejected),
    )


def record_sale(context: RuntimeContext, command: SaleCommand) -> CommitResult:
    """Validate and commit a sale to a seller party.

    Lines are priced at the item sale rate. Sales may not exceed available
    stock; unavailable lines abort the sale unless
    ``command.skip_unavailable`` is set. Any outstanding balance of the
    party is folded into the grand total.

    Args:
        context (RuntimeContext): Runtime context with workbook and guard.
        command (SaleCommand): Structured sale request.

    Returns:
        CommitResult: Invoice, ledger entry and updated party.

    Raises:
        MissingReferenceError: If the party or an item is unknown.
        BusinessRuleViolation: If the party is archived or not a seller.
        InsufficientStock: If a line exceeds available stock.
        ValidationError: On malformed line or payment input.
        SubmissionLocked: If another submission is in flight.
        LedgerInvariantViolation: If the posting breaks ledger rules.
    """
    return _record_invoice(context, TransactionKind.SALE, command, skip_unavailable=command.skip_unavailable)


def record_purchase(context: RuntimeContext, command: PurchaseCommand) -> CommitResult:
    """Validate and commit a purchase through a buyer party.

    Lines are priced at the item purchase rate unless a line overrides it,
    there is no stock cap, and the invoice total and paid amount are rounded
    to whole units.
    """
    return _record_invoice(context, TransactionKind.PURCHASE, command, skip_unavailable=False)


def record_return(context: RuntimeContext, command: ReturnCommand) -> CommitResult:
    """Validate and commit a return of goods.

    ``return_from_seller`` brings goods back into stock from a seller party
    at the sale rate; ``return_to_buyer`` sends goods back out through a
    buyer party at the purchase rate and may not exceed stock.

    With ``adjust`` the return first pays down the party balance; any excess
    is paid out in cash and must be confirmed with
    ``command.cash_confirmed``. With ``cash`` the whole amount is paid out
    and the balance is untouched.

    Raises:
        ConfirmationRequired: If cash is due on an ``adjust`` return and the
            command is not confirmed.
        BusinessRuleViolation: If the direction is not a return or the party
            role does not match it.
        InsufficientStock: If a ``return_to_buyer`` line exceeds stock.
    """
    direction = TransactionKind(command.direction)
    if direction not in RETURN_DIRECTIONS:
        raise BusinessRuleViolation(f"'{direction.value}' is not a return direction")
    party = _require_party(context, command.party_id, direction)
    lines, rejected = _prepare_lines(context, direction, command.lines, skip_unavailable=command.skip_unavailable)
    invoice = compute_invoice(
        TransactionType.RETURN,
        party.party_id,
        compute_line_items(lines, command.with_gst),
        with_gst=command.with_gst,
    )
    settlement = resolve_return_settlement(invoice.invoice_total, party.balance_amount, command.return_type)
    if settlement.requires_confirmation and not command.cash_confirmed:
        log.warning(
            "Return for party '%s' needs %s paid in cash; awaiting confirmation",
            party.party_id,
            settlement.cash_payment_required,
        )
        raise ConfirmationRequired(settlement.cash_payment_required)

    timestamp = _resolve_timestamp(command.timestamp)
    invoice_id = generate_id(prefix="RET", when=timestamp)
    updated, entry = _commit(
        context,
        direction,
        party.party_id,
        ReturnPosting(settlement),
        timestamp=timestamp,
        invoice_id=invoice_id,
        invoice_row=_invoice_row(
            invoice_id,
            timestamp,
            direction,
            invoice,
            notes=command.notes,
            settlement=settlement,
        ),
        lines=lines,
        line_rows=_invoice_line_rows(invoice_id, lines, invoice.line_results),
    )
    log.info(
        "Recorded %s '%s' for party '%s' (total=%s, adjusted=%s, cash=%s)",
        direction.value,
        invoice_id,
        party.party_id,
        settlement.return_total,
        settlement.adjustment_amount,
        settlement.cash_payment_required,
    )
    return CommitResult(
        party=updated,
        entry=entry,
        invoice_id=invoice_id,
        invoice=invoice,
        settlement=settlement,
        rejected=tuple(rejected),
    )


def record_payment(context: RuntimeContext, command: PaymentCommand) -> CommitResult:
    """Record a payment against a party's outstanding balance.

    A payment larger than the balance clears it to zero.

    Raises:
        ValidationError: If the amount is not positive.
    """
    amount = to_decimal(command.amount, field="amount")
    if amount <= ZERO:
        log.error("Payment validation failed: %s", amount)
        raise ValidationError("Payment amount must be greater than zero")
    party = _require_party(context, command.party_id, TransactionKind.PAYMENT)
    if amount > party.balance_amount:
        log.warning(
            "Payment of %s exceeds balance %s of party '%s'; balance will be cleared",
            amount,
            party.balance_amount,
            party.party_id,
        )

    timestamp = _resolve_timestamp(command.timestamp)
    updated, entry = _commit(
        context,
        TransactionKind.PAYMENT,
        party.party_id,
        PaymentPosting(amount),
        timestamp=timestamp,
    )
    log.info("Recorded payment of %s for party '%s'", amount, party.party_id)
    return CommitResult(party=updated, entry=entry)
