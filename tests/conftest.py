"""Shared pytest fixtures and utilities for Billbook tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from billbook import cli, constants, core_logic, data_manager  # noqa: E402
from billbook.billing import StockItem  # noqa: E402
from billbook.ledger import Party  # noqa: E402
from setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "WithGst = {with_gst}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str
    with_gst: bool


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "billbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Traders",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        with_gst: bool = False,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                with_gst="yes" if with_gst else "no",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
            with_gst=with_gst,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def seeded_context(runtime_context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Runtime context holding one buyer, one seller and three items."""

    context = runtime_context
    core_logic.add_party(
        context,
        party_id="B1",
        name="Wholesale Mart",
        role=constants.PartyRole.BUYER,
    )
    core_logic.add_party(
        context,
        party_id="S1",
        name="Corner Store",
        role=constants.PartyRole.SELLER,
    )
    core_logic.add_item(
        context,
        item_id="I1",
        product_name="Rice 5kg",
        sale_rate=Decimal("135"),
        purchase_rate=Decimal("100"),
        tax_rate=Decimal("18"),
        available_quantity=10,
    )
    core_logic.add_item(
        context,
        item_id="I2",
        product_name="Sugar 1kg",
        sale_rate=Decimal("50"),
        purchase_rate=Decimal("40"),
        tax_rate=Decimal("5"),
        available_quantity=2,
    )
    core_logic.add_item(
        context,
        item_id="I3",
        product_name="Salt 1kg",
        sale_rate=Decimal("20"),
        purchase_rate=Decimal("15"),
        tax_rate=Decimal("0"),
        available_quantity=0,
    )
    return context


# ---------------------------------------------------------------------------
# Domain object factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_party() -> Callable[..., Party]:
    """Build :class:`Party` records with sensible defaults."""

    def _make(
        party_id: str = "P1",
        *,
        role: constants.PartyRole = constants.PartyRole.SELLER,
        balance: Decimal | str = "0",
        opening: Decimal | str | None = None,
        is_active: bool = True,
    ) -> Party:
        balance_value = Decimal(balance)
        return Party(
            party_id=party_id,
            name=f"Party {party_id}",
            role=role,
            opening_balance=balance_value if opening is None else Decimal(opening),
            balance_amount=balance_value,
            is_active=is_active,
        )

    return _make


@pytest.fixture
def make_item() -> Callable[..., StockItem]:
    """Build :class:`StockItem` records with sensible defaults."""

    def _make(
        item_id: str = "I1",
        *,
        sale_rate: str = "135",
        purchase_rate: str = "100",
        tax_rate: str = "18",
        available_quantity: int = 10,
    ) -> StockItem:
        return StockItem(
            item_id=item_id,
            product_name=f"Item {item_id}",
            sale_rate=Decimal(sale_rate),
            purchase_rate=Decimal(purchase_rate),
            tax_rate=Decimal(tax_rate),
            available_quantity=available_quantity,
        )

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="billbook-cli", description="Billbook CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "billbook.xlsx",
        shop_name="Test Traders",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_with_gst=False,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
