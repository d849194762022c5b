"""Unit tests for the pure invoice calculation engine."""

from __future__ import annotations

from decimal import Decimal

import pytest

from billbook import billing
from billbook.billing import LineItem, compute_invoice, compute_line_item
from billbook.constants import DiscountType, PaymentStatus, TransactionKind, TransactionType
from billbook.errors import InsufficientStock, ValidationError


def _line(
    *,
    rate: str = "100",
    quantity: int = 1,
    discount_type: DiscountType = DiscountType.AMOUNT,
    discount_value: str | None = None,
    tax_rate: str = "0",
    available_quantity: int = 0,
    item_id: str = "I1",
) -> LineItem:
    return LineItem(
        item_id=item_id,
        quantity=quantity,
        rate=Decimal(rate),
        discount_type=discount_type,
        discount_value=None if discount_value is None else Decimal(discount_value),
        tax_rate=Decimal(tax_rate),
        available_quantity=available_quantity,
    )


# ---------------------------------------------------------------------------
# LineItemCalculator
# ---------------------------------------------------------------------------


def test_percentage_discount_with_reverse_gst():
    """10% off 3 x 100 at 18% GST extracts tax from the discounted total."""

    result = compute_line_item(
        _line(rate="100", quantity=3, discount_type=DiscountType.PERCENTAGE, discount_value="10", tax_rate="18"),
        with_gst=True,
    )

    assert result.item_total == Decimal("300")
    assert result.discount_amount == Decimal("30")
    assert result.total_after_discount == Decimal("270")
    assert billing.quantize_money(result.taxable_value) == Decimal("228.81")
    assert billing.quantize_money(result.tax_amount) == Decimal("41.19")
    assert result.taxable_value + result.tax_amount == result.total_after_discount


def test_without_gst_the_whole_total_is_taxable():
    result = compute_line_item(_line(rate="100", quantity=2, tax_rate="18"), with_gst=False)

    assert result.taxable_value == Decimal("200")
    assert result.tax_amount == Decimal("0")


def test_zero_rate_slab_charges_no_tax_even_with_gst():
    result = compute_line_item(_line(rate="40", quantity=1, tax_rate="0"), with_gst=True)

    assert result.taxable_value == Decimal("40")
    assert result.tax_amount == Decimal("0")


def test_missing_discount_value_means_no_discount():
    result = compute_line_item(_line(rate="12.50", quantity=4), with_gst=False)

    assert result.discount_amount == Decimal("0")
    assert result.total_after_discount == Decimal("50.00")


@pytest.mark.parametrize("discount", ["300", "301", "1000000"])
def test_amount_discount_is_clamped_to_line_total(discount):
    """An oversized flat discount zeroes the line but never makes it negative."""

    result = compute_line_item(_line(rate="100", quantity=3, discount_value=discount, tax_rate="18"), with_gst=True)

    assert result.discount_amount == result.item_total
    assert result.total_after_discount == Decimal("0")
    assert result.taxable_value == Decimal("0")
    assert result.tax_amount == Decimal("0")


def test_percentage_discount_above_hundred_is_clamped():
    result = compute_line_item(
        _line(rate="10", quantity=1, discount_type=DiscountType.PERCENTAGE, discount_value="150"),
        with_gst=False,
    )

    assert result.total_after_discount == Decimal("0")


@pytest.mark.parametrize("tax_rate", ["5", "18", "28"])
@pytest.mark.parametrize("rate", ["0", "0.01", "99.99", "1234.56"])
def test_gst_extraction_round_trips(rate, tax_rate):
    result = compute_line_item(_line(rate=rate, quantity=7, tax_rate=tax_rate), with_gst=True)

    restored = result.taxable_value * (1 + Decimal(tax_rate) / 100)
    assert abs(restored - result.total_after_discount) <= Decimal("1e-6")


@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity": 0},
        {"quantity": -1},
        {"rate": "-1"},
        {"discount_value": "-5"},
        {"tax_rate": "12"},
    ],
)
def test_invalid_line_input_raises_validation_error(overrides):
    with pytest.raises(ValidationError):
        compute_line_item(_line(**overrides), with_gst=True)


def test_fractional_quantity_is_rejected():
    line = LineItem(item_id="I1", quantity=1.5, rate=Decimal("10"))  # type: ignore[arg-type]

    with pytest.raises(ValidationError):
        compute_line_item(line, with_gst=False)


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        compute_line_item(_line(quantity=0), with_gst=False)


# ---------------------------------------------------------------------------
# Rate selection
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "kind, expected",
    [
        (TransactionKind.PURCHASE, Decimal("100")),
        (TransactionKind.RETURN_TO_BUYER, Decimal("100")),
        (TransactionKind.SALE, Decimal("135")),
        (TransactionKind.RETURN_FROM_SELLER, Decimal("135")),
    ],
)
def test_rate_selector_picks_rate_by_kind(make_item, kind, expected):
    assert billing.rate_selector(kind, make_item()) == expected


def test_rate_selector_rejects_payments(make_item):
    with pytest.raises(ValidationError):
        billing.rate_selector(TransactionKind.PAYMENT, make_item())


def test_build_line_item_honours_rate_override(make_item):
    line = billing.build_line_item(TransactionKind.PURCHASE, make_item(), 2, rate="95.50")

    assert line.rate == Decimal("95.50")
    assert line.tax_rate == Decimal("18")
    assert line.available_quantity == 10


def test_build_line_item_validates_quantity(make_item):
    with pytest.raises(ValidationError):
        billing.build_line_item(TransactionKind.SALE, make_item(), 0)


def test_to_decimal_rejects_garbage():
    with pytest.raises(ValidationError):
        billing.to_decimal("abc", field="rate")
    with pytest.raises(ValidationError):
        billing.to_decimal("NaN", field="rate")


def test_to_decimal_reads_floats_through_str():
    assert billing.to_decimal(0.1) == Decimal("0.1")
    assert billing.to_decimal(None) == Decimal("0")


# ---------------------------------------------------------------------------
# StockAvailabilityGuard
# ---------------------------------------------------------------------------


def test_sale_beyond_available_stock_is_rejected():
    line = _line(quantity=5, available_quantity=3)

    verdict = billing.check_stock(line, TransactionKind.SALE)

    assert verdict.accepted is False
    assert "only 3 available" in (verdict.reason or "")
    with pytest.raises(InsufficientStock) as excinfo:
        billing.require_stock(line, TransactionKind.SALE)
    assert excinfo.value.item_ids == ["I1"]


def test_return_to_buyer_is_capped_by_stock():
    assert billing.check_stock(_line(quantity=2, available_quantity=1), TransactionKind.RETURN_TO_BUYER).accepted is False


@pytest.mark.parametrize("kind", [TransactionKind.PURCHASE, TransactionKind.RETURN_FROM_SELLER])
def test_inbound_kinds_may_exceed_stock(kind):
    assert billing.check_stock(_line(quantity=50, available_quantity=0), kind).accepted is True


def test_return_from_seller_with_negative_stock_is_priced():
    """Goods can come back even when the stock count has gone below zero."""

    line = _line(rate="10", quantity=2, available_quantity=-3)

    assert billing.check_stock(line, TransactionKind.RETURN_FROM_SELLER).accepted is True
    assert compute_line_item(line, with_gst=False).total_after_discount == Decimal("20")


@pytest.mark.parametrize("kind", [TransactionKind.SALE, TransactionKind.RETURN_TO_BUYER])
def test_outbound_kinds_reject_negative_stock(kind):
    assert billing.check_stock(_line(quantity=1, available_quantity=-3), kind).accepted is False


def test_exact_stock_is_accepted_for_sales():
    assert billing.check_stock(_line(quantity=3, available_quantity=3), TransactionKind.SALE).accepted is True


def test_check_stock_rejects_payments():
    with pytest.raises(ValidationError):
        billing.check_stock(_line(), TransactionKind.PAYMENT)


def test_partition_lines_judges_each_line_independently():
    lines = [
        _line(item_id="A", quantity=1, available_quantity=5),
        _line(item_id="B", quantity=5, available_quantity=3),
        _line(item_id="C", quantity=2, available_quantity=2),
    ]

    accepted, rejected = billing.partition_lines(lines, TransactionKind.SALE)

    assert [line.item_id for line in accepted] == ["A", "C"]
    assert [check.item_id for check in rejected] == ["B"]


# ---------------------------------------------------------------------------
# InvoiceAggregator
# ---------------------------------------------------------------------------


def _results(*lines: LineItem, with_gst: bool = False):
    return [compute_line_item(line, with_gst) for line in lines]


def test_purchase_invoice_total_rounds_to_whole_units():
    invoice = compute_invoice(
        TransactionKind.PURCHASE,
        "B1",
        _results(_line(rate="1234.50")),
        with_gst=False,
    )

    assert invoice.kind is TransactionType.PURCHASE
    assert invoice.invoice_total == Decimal("1235")
    assert invoice.paid_amount == Decimal("1235")
    assert invoice.balance_due == Decimal("0")


def test_purchase_partial_payment_rounds_to_whole_units():
    invoice = compute_invoice(
        TransactionKind.PURCHASE,
        "B1",
        _results(_line(rate="1000")),
        with_gst=False,
        payment_status=PaymentStatus.PARTIALLY_PAID,
        paid_amount="400.60",
    )

    assert invoice.paid_amount == Decimal("401")
    assert invoice.balance_due == Decimal("599")


def test_sale_invoice_keeps_paise():
    invoice = compute_invoice(TransactionKind.SALE, "S1", _results(_line(rate="1234.555")), with_gst=False)

    assert invoice.invoice_total == Decimal("1234.56")


def test_gst_invoice_sums_taxable_and_tax():
    invoice = compute_invoice(
        TransactionKind.SALE,
        "S1",
        _results(
            _line(item_id="A", rate="100", quantity=3, discount_type=DiscountType.PERCENTAGE, discount_value="10", tax_rate="18"),
            _line(item_id="B", rate="105", quantity=1, tax_rate="5"),
            with_gst=True,
        ),
        with_gst=True,
    )

    assert invoice.invoice_total == Decimal("375.00")
    assert billing.quantize_money(invoice.subtotal) == Decimal("328.81")
    assert billing.quantize_money(invoice.tax_total) == Decimal("46.19")


def test_previous_balance_is_folded_into_grand_total():
    invoice = compute_invoice(
        TransactionKind.SALE,
        "S1",
        _results(_line(rate="200")),
        with_gst=False,
        previous_balance=Decimal("150"),
    )

    assert invoice.previous_balance_snapshot == Decimal("150")
    assert invoice.previous_balance_paid == Decimal("150")
    assert invoice.grand_total == Decimal("350.00")
    assert invoice.paid_amount == Decimal("350.00")


def test_non_positive_previous_balance_is_not_folded():
    invoice = compute_invoice(
        TransactionKind.SALE,
        "S1",
        _results(_line(rate="200")),
        with_gst=False,
        previous_balance=Decimal("-20"),
    )

    assert invoice.previous_balance_paid == Decimal("0")
    assert invoice.grand_total == Decimal("200.00")


@pytest.mark.parametrize("previous", ["0", "99.99", "1000"])
@pytest.mark.parametrize("with_gst", [True, False])
def test_fully_paid_invoice_has_nothing_due(previous, with_gst):
    invoice = compute_invoice(
        TransactionKind.SALE,
        "S1",
        _results(_line(rate="33.33", quantity=3, tax_rate="28"), with_gst=with_gst),
        with_gst=with_gst,
        previous_balance=Decimal(previous),
        payment_status=PaymentStatus.FULLY_PAID,
    )

    assert invoice.balance_due == Decimal("0")


@pytest.mark.parametrize(
    "entered, expected_paid",
    [(None, "0.00"), ("-5", "0.00"), ("120", "120.00"), ("999", "300.00")],
)
def test_partial_payment_is_clamped_into_grand_total(entered, expected_paid):
    invoice = compute_invoice(
        TransactionKind.SALE,
        "S1",
        _results(_line(rate="300")),
        with_gst=False,
        payment_status=PaymentStatus.PARTIALLY_PAID,
        paid_amount=entered,
    )

    assert invoice.paid_amount == Decimal(expected_paid)
    assert invoice.balance_due == invoice.grand_total - invoice.paid_amount


def test_empty_cart_is_rejected():
    with pytest.raises(ValidationError):
        compute_invoice(TransactionKind.SALE, "S1", [], with_gst=False)


def test_payment_kind_produces_no_invoice():
    with pytest.raises(ValidationError):
        compute_invoice(TransactionKind.PAYMENT, "S1", _results(_line()), with_gst=False)


def test_return_directions_aggregate_as_returns():
    invoice = compute_invoice(TransactionKind.RETURN_FROM_SELLER, "S1", _results(_line(rate="10")), with_gst=False)

    assert invoice.kind is TransactionType.RETURN


def test_validate_paid_amount_refuses_overpayment():
    with pytest.raises(ValidationError):
        billing.validate_paid_amount(Decimal("101"), Decimal("100"))
    with pytest.raises(ValidationError):
        billing.validate_paid_amount(Decimal("-1"), Decimal("100"))
    assert billing.validate_paid_amount("100", Decimal("100")) == Decimal("100")


def test_tax_breakdown_splits_tax_in_halves():
    invoice = compute_invoice(
        TransactionKind.SALE,
        "S1",
        _results(_line(rate="118", tax_rate="18"), with_gst=True),
        with_gst=True,
    )

    assert billing.tax_breakdown(invoice) == {
        "cgst": Decimal("9.00"),
        "sgst": Decimal("9.00"),
        "total_tax": Decimal("18.00"),
    }


def test_tax_breakdown_is_zero_without_gst():
    invoice = compute_invoice(TransactionKind.SALE, "S1", _results(_line(rate="118", tax_rate="18")), with_gst=False)

    assert billing.tax_breakdown(invoice)["total_tax"] == Decimal("0")
