"""Command-line entry points for Billbook.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing the results. Keeping the CLI thin ensures the same
parser configuration can be reused by tests, scripts, or any alternative
front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .billing import quantize_money, tax_breakdown, to_decimal
from .constants import DiscountType, PartyRole, PaymentStatus, ReturnType, TransactionKind
from .errors import (
    BusinessRuleViolation,
    InsufficientStock,
    LedgerInvariantViolation,
    SubmissionLocked,
    ValidationError,
)

INVOICE_KINDS = [
    TransactionKind.PURCHASE.value,
    TransactionKind.SALE.value,
    TransactionKind.RETURN_FROM_SELLER.value,
    TransactionKind.RETURN_TO_BUYER.value,
]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="billbook-cli",
        description="Command-line tools for the Billbook invoice and party ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upwards).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as invoices and payments."""
    specs = {
        "add-party": add_party_spec(),
        "add-item": add_item_spec(),
        "archive-party": archive_party_spec(),
        "purchase": purchase_spec(),
        "sale": sale_spec(),
        "return": return_spec(),
        "payment": payment_spec(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and previews."""
    specs = {
        "stock": stock_spec(),
        "parties": parties_spec(),
        "ledger": ledger_spec(),
        "balances": balances_spec(),
        "verify": verify_spec(),
        "item-sales": item_sales_spec(),
        "preview": preview_spec(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_line_spec(text: str) -> core_logic.LineRequest:
    """Parse ``ITEM_ID:QTY[:DISCOUNT[%]]`` into a :class:`LineRequest`.

    A trailing ``%`` marks a percentage discount; otherwise the discount is a
    flat amount.
    """
    parts = text.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected ITEM_ID:QTY[:DISCOUNT[%]], got '{text}'")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in '{text}'") from exc

    discount_type = DiscountType.AMOUNT
    discount_value: Optional[Decimal] = None
    if len(parts) == 3 and parts[2]:
        raw = parts[2]
        if raw.endswith("%"):
            discount_type = DiscountType.PERCENTAGE
            raw = raw[:-1]
        try:
            discount_value = to_decimal(raw, field="discount")
        except ValidationError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from exc
    return core_logic.LineRequest(
        item_id=parts[0],
        quantity=quantity,
        discount_type=discount_type,
        discount_value=discount_value,
    )


def _add_cart_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--party-id", required=True)
    parser.add_argument(
        "--line",
        dest="lines",
        action="append",
        type=parse_line_spec,
        required=True,
        metavar="ITEM_ID:QTY[:DISCOUNT[%]]",
        help="Cart line; repeat for every item.",
    )
    parser.add_argument(
        "--gst",
        dest="with_gst",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Treat rates as GST inclusive (defaults to [Defaults] WithGst).",
    )


def _add_payment_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--paid",
        default=None,
        help="Amount paid now; omit for a fully paid invoice.",
    )


def add_party_spec() -> CommandSpec:
    """Build the spec for ``add-party``."""
    name = "add-party"
    help_text = "Register a new buyer or seller party."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--role", choices=[member.value for member in PartyRole], required=True)
        parser.add_argument("--opening-balance", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_party, writes=True)


def add_item_spec() -> CommandSpec:
    """Build the spec for ``add-item``."""
    name = "add-item"
    help_text = "Register a new stock item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--sale-rate", required=True)
        parser.add_argument("--purchase-rate", required=True)
        parser.add_argument("--tax-rate", choices=["0", "5", "18", "28"], default="0")
        parser.add_argument("--quantity", type=int, default=0)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item, writes=True)


def archive_party_spec() -> CommandSpec:
    name = "archive-party"
    help_text = "Soft-archive a party so no new transactions can be posted to it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_archive_party, writes=True)


def purchase_spec() -> CommandSpec:
    """Build the spec for ``purchase``."""
    name = "purchase"
    help_text = "Record a purchase through a buyer party."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_cart_arguments(parser)
        _add_payment_arguments(parser)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase, writes=True)


def sale_spec() -> CommandSpec:
    """Build the spec for ``sale``."""
    name = "sale"
    help_text = "Record a sale to a seller party."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_cart_arguments(parser)
        _add_payment_arguments(parser)
        parser.add_argument(
            "--skip-unavailable",
            action="store_true",
            help="Drop lines that exceed stock instead of aborting.",
        )
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, writes=True)


def return_spec() -> CommandSpec:
    """Build the spec for ``return``."""
    name = "return"
    help_text = "Record a return of goods from a seller or to a buyer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_cart_arguments(parser)
        parser.add_argument(
            "--direction",
            choices=[TransactionKind.RETURN_FROM_SELLER.value, TransactionKind.RETURN_TO_BUYER.value],
            required=True,
        )
        parser.add_argument(
            "--return-type",
            choices=[member.value for member in ReturnType],
            default=ReturnType.ADJUST.value,
        )
        parser.add_argument(
            "--confirm-cash",
            action="store_true",
            help="Confirm paying out cash when the return exceeds the party balance.",
        )
        parser.add_argument("--skip-unavailable", action="store_true")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return, writes=True)


def payment_spec() -> CommandSpec:
    """Build the spec for ``payment``."""
    name = "payment"
    help_text = "Record a payment against a party balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payment, writes=True)


def stock_spec() -> CommandSpec:
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def parties_spec() -> CommandSpec:
    name = "parties"
    help_text = "Display parties and their running balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="include_inactive", action="store_true", help="Include archived parties.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_parties_report)


def ledger_spec() -> CommandSpec:
    name = "ledger"
    help_text = "Display ledger entries in timestamp order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report)


def balances_spec() -> CommandSpec:
    name = "balances"
    help_text = "Display parties with an outstanding balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances_report)


def verify_spec() -> CommandSpec:
    name = "verify"
    help_text = "Replay a party's ledger and check it against the stored balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_verify)


def parse_date_arg(text: str) -> datetime:
    """Parse an ISO date or datetime; naive values are taken as UTC."""
    try:
        value = datetime.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected an ISO date such as 2024-04-01, got '{text}'") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def item_sales_spec() -> CommandSpec:
    """Build the spec for ``item-sales``."""
    name = "item-sales"
    help_text = "Display quantities and amounts sold per item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--from", dest="start", type=parse_date_arg, default=None)
        parser.add_argument("--to", dest="end", type=parse_date_arg, default=None, help="Exclusive upper bound.")
        parser.add_argument(
            "--gst",
            dest="with_gst",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Only GST (--gst) or non-GST (--no-gst) invoices.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_item_sales_report)


def preview_spec() -> CommandSpec:
    """Build the spec for ``preview``."""
    name = "preview"
    help_text = "Price a cart without recording it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=INVOICE_KINDS, required=True)
        _add_cart_arguments(parser)
        _add_payment_arguments(parser)
        parser.add_argument(
            "--return-type",
            choices=[member.value for member in ReturnType],
            default=None,
            help="Settlement for return previews (default: adjust).",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_preview)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _resolve_gst(context: core_logic.RuntimeContext, args: argparse.Namespace) -> bool:
    if args.with_gst is None:
        return context.settings.default_with_gst
    return bool(args.with_gst)


def _payment_fields(args: argparse.Namespace) -> tuple[PaymentStatus, Optional[Decimal]]:
    if args.paid is None:
        return PaymentStatus.FULLY_PAID, None
    return PaymentStatus.PARTIALLY_PAID, to_decimal(args.paid, field="paid")


def translate_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    status, paid = _payment_fields(args)
    return core_logic.PurchaseCommand(
        party_id=args.party_id,
        lines=tuple(args.lines),
        with_gst=_resolve_gst(context, args),
        payment_status=status,
        paid_amount=paid,
        notes=args.notes,
    )


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    status, paid = _payment_fields(args)
    return core_logic.SaleCommand(
        party_id=args.party_id,
        lines=tuple(args.lines),
        with_gst=_resolve_gst(context, args),
        payment_status=status,
        paid_amount=paid,
        skip_unavailable=args.skip_unavailable,
        notes=args.notes,
    )


def translate_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.ReturnCommand:
    """Translate CLI args into a return command object."""
    return core_logic.ReturnCommand(
        party_id=args.party_id,
        direction=TransactionKind(args.direction),
        lines=tuple(args.lines),
        return_type=ReturnType(args.return_type),
        with_gst=_resolve_gst(context, args),
        cash_confirmed=args.confirm_cash,
        skip_unavailable=args.skip_unavailable,
        notes=args.notes,
    )


def translate_payment(args: argparse.Namespace) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PaymentCommand(
        party_id=args.party_id,
        amount=to_decimal(args.amount, field="amount"),
        notes=args.notes,
    )


def _print_result(result: core_logic.CommitResult) -> None:
    if result.invoice_id is not None and result.invoice is not None:
        invoice = result.invoice
        taxes = tax_breakdown(invoice)
        print(f"Invoice {result.invoice_id} ({invoice.kind.value}) for party {invoice.party_id}")
        print(f"  Subtotal:          {quantize_money(invoice.subtotal)}")
        print(f"  CGST / SGST:       {taxes['cgst']} / {taxes['sgst']}")
        print(f"  Invoice total:     {invoice.invoice_total}")
        if result.settlement is None:
            print(f"  Previous balance:  {quantize_money(invoice.previous_balance_paid)}")
            print(f"  Grand total:       {quantize_money(invoice.grand_total)}")
            print(f"  Paid:              {quantize_money(invoice.paid_amount)}")
        else:
            print(f"  Adjusted:          {quantize_money(result.settlement.adjustment_amount)}")
            print(f"  Cash paid out:     {quantize_money(result.settlement.cash_payment_required)}")
    for check in result.rejected:
        print(f"  Skipped {check.item_id}: {check.reason}")
    print(f"Party {result.party.party_id} balance: {quantize_money(result.party.balance_amount)}")


def run_add_party(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-party workflow in the BLL."""
    party = core_logic.add_party(
        context,
        party_id=args.party_id,
        name=args.name,
        role=PartyRole(args.role),
        opening_balance=args.opening_balance,
    )
    print(f"Added {party.role.value} party {party.party_id} ({party.name})")
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    item = core_logic.add_item(
        context,
        item_id=args.item_id,
        product_name=args.name,
        sale_rate=args.sale_rate,
        purchase_rate=args.purchase_rate,
        tax_rate=args.tax_rate,
        available_quantity=args.quantity,
    )
    print(f"Added item {item.item_id} ({item.product_name})")
    return 0


def run_archive_party(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.archive_party(context, args.party_id)
    print(f"Archived party {args.party_id}")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    _print_result(core_logic.record_purchase(context, translate_purchase(context, args)))
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    _print_result(core_logic.record_sale(context, translate_sale(context, args)))
    return 0


def run_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the return workflow via the BLL."""
    _print_result(core_logic.record_return(context, translate_return(context, args)))
    return 0


def run_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    _print_result(core_logic.record_payment(context, translate_payment(args)))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for item in core_logic.list_items(context):
        print(f"{item.item_id}\t{item.product_name}\t{item.available_quantity}")
    return 0


def run_parties_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the party listing workflow."""
    for party in core_logic.list_parties(context, include_inactive=args.include_inactive):
        status = "" if party.is_active else "\t(archived)"
        print(f"{party.party_id}\t{party.name}\t{party.role.value}\t{quantize_money(party.balance_amount)}{status}")
    return 0


def run_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger listing workflow."""
    for entry in core_logic.list_ledger_entries(context, args.party_id):
        print(
            f"{entry.timestamp.isoformat()}\t{entry.party_id}\t{entry.transaction_type.value}\t"
            f"{quantize_money(entry.previous_balance)}\t{quantize_money(entry.this_transaction_amount)}\t"
            f"{quantize_money(entry.paid_amount)}\t{quantize_money(entry.balance_after)}"
        )
    return 0


def run_balances_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the outstanding balances reporting workflow."""
    for party_id, balance in core_logic.calculate_outstanding_balances(context).items():
        print(f"{party_id}\t{quantize_money(balance)}")
    return 0


def run_verify(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    balance = core_logic.verify_party_ledger(context, args.party_id)
    print(f"Ledger for party {args.party_id} is consistent; balance {quantize_money(balance)}")
    return 0


def run_item_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the item-wise sales reporting workflow."""
    sales = core_logic.calculate_item_sales(context, start=args.start, end=args.end, with_gst=args.with_gst)
    for item_id, row in sales.items():
        print(
            f"{item_id}\t{row.quantity}\t{quantize_money(row.taxable_value)}\t"
            f"{quantize_money(row.tax_amount)}\t{quantize_money(row.total_amount)}"
        )
    return 0


def run_preview(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice preview workflow without touching the workbook."""
    kind = TransactionKind(args.kind)
    is_return = kind in core_logic.RETURN_DIRECTIONS
    if is_return and args.paid is not None:
        raise ValidationError("--paid does not apply to returns; use --return-type")
    if not is_return and args.return_type is not None:
        raise ValidationError("--return-type only applies to returns")
    status, paid = _payment_fields(args)
    preview = core_logic.preview_invoice(
        context,
        kind,
        args.party_id,
        tuple(args.lines),
        with_gst=_resolve_gst(context, args),
        payment_status=status,
        paid_amount=paid,
        return_type=ReturnType(args.return_type or ReturnType.ADJUST.value),
    )
    invoice = preview.invoice
    taxes = tax_breakdown(invoice)
    for result in invoice.line_results:
        print(
            f"{result.item_id}\t{quantize_money(result.item_total)}\t-{quantize_money(result.discount_amount)}\t"
            f"{quantize_money(result.taxable_value)}\t{quantize_money(result.tax_amount)}"
        )
    for check in preview.rejected:
        print(f"Skipped {check.item_id}: {check.reason}")
    print(f"CGST / SGST: {taxes['cgst']} / {taxes['sgst']}")
    print(f"Invoice total: {invoice.invoice_total}")
    settlement = preview.settlement
    if settlement is not None:
        print(f"Adjusted against balance: {quantize_money(settlement.adjustment_amount)}")
        print(f"Cash to pay out: {quantize_money(settlement.cash_payment_required)}")
        print(f"Needs confirmation: {'yes' if settlement.requires_confirmation else 'no'}")
        return 0
    print(f"Grand total: {quantize_money(invoice.grand_total)}")
    print(f"Balance due: {quantize_money(invoice.balance_due)}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, SubmissionLocked):
        log.error("%s", error)
        return 4
    if isinstance(error, LedgerInvariantViolation):
        log.critical("%s", error)
        return 5
    if isinstance(error, (BusinessRuleViolation, ValidationError, InsufficientStock)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
