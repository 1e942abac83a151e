"""Shared pytest fixtures and utilities for Cattle Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cattle_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from cattle_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USER_ID = "owner-1"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "FarmName = {farm_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Session]\n"
    "UserID = {user_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    user_id: str
    schema_version: str
    farm_name: str


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
    """Factory that creates an empty ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "cattle_ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        farm_name: str = "Test Farm",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        user_id: str = DEFAULT_USER_ID,
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
                farm_name=farm_name,
                schema_version=schema_version,
                user_id=user_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            user_id=user_id,
            schema_version=schema_version,
            farm_name=farm_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a signed-in runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="cattle-cli", description="Cattle CLI")


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
        data_file=tmp_path / "cattle_ledger.xlsx",
        farm_name="Test Farm",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        user_id=DEFAULT_USER_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a signed-in runtime context around a mock workbook."""

    return core_logic.RuntimeContext(
        settings=settings,
        workbook=workbook,
        session=core_logic.SessionContext(DEFAULT_USER_ID),
    )


@pytest.fixture
def signed_out_context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Runtime context with nobody signed in."""

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


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------


def make_purchase(
    transaction_id: str,
    *,
    quantity: int,
    price_per_head: str = "500",
    occurred_on: date = date(2025, 1, 10),
    user_id: str = DEFAULT_USER_ID,
    breed: Optional[str] = "Angus",
) -> data_manager.TransactionRow:
    price = Decimal(price_per_head)
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        user_id=user_id,
        transaction_type=constants.TransactionType.BUY.value,
        quantity=quantity,
        price_per_head=price,
        total_amount=price * quantity,
        breed=breed,
        average_weight_kg=None,
        occurred_on=occurred_on,
        notes=None,
        input_cost_deduction=Decimal("0"),
        created_at="2025-01-10T00:00:00+00:00",
        updated_at="2025-01-10T00:00:00+00:00",
    )


def make_sale(
    transaction_id: str,
    *,
    quantity: int,
    total_amount: str,
    deduction: str = "0",
    occurred_on: date = date(2025, 1, 20),
    user_id: str = DEFAULT_USER_ID,
) -> data_manager.TransactionRow:
    total = Decimal(total_amount)
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        user_id=user_id,
        transaction_type=constants.TransactionType.SELL.value,
        quantity=quantity,
        price_per_head=total / quantity,
        total_amount=total,
        breed=None,
        average_weight_kg=None,
        occurred_on=occurred_on,
        notes=None,
        input_cost_deduction=Decimal(deduction),
        created_at="2025-01-20T00:00:00+00:00",
        updated_at="2025-01-20T00:00:00+00:00",
    )


def make_cost(
    cost_id: str,
    *,
    amount: str,
    category: str = constants.CostCategory.FEED.value,
    occurred_on: date = date(2025, 1, 15),
    user_id: str = DEFAULT_USER_ID,
) -> data_manager.InputCostRow:
    return data_manager.InputCostRow(
        cost_id=cost_id,
        user_id=user_id,
        category=category,
        amount=Decimal(amount),
        occurred_on=occurred_on,
        description=None,
        created_at="2025-01-15T00:00:00+00:00",
        updated_at="2025-01-15T00:00:00+00:00",
    )


def make_allocation(
    allocation_id: str,
    *,
    sale_id: str,
    batch_id: str,
    quantity: int,
    cost_per_head: str = "500",
    user_id: str = DEFAULT_USER_ID,
) -> data_manager.AllocationRow:
    return data_manager.AllocationRow(
        allocation_id=allocation_id,
        user_id=user_id,
        sale_transaction_id=sale_id,
        purchase_transaction_id=batch_id,
        quantity=quantity,
        cost_per_head=Decimal(cost_per_head),
        created_at="2025-01-20T00:00:00+00:00",
        updated_at="2025-01-20T00:00:00+00:00",
    )


@pytest.fixture
def ledger_rows(monkeypatch: pytest.MonkeyPatch) -> Callable[..., dict[str, Mock]]:
    """Patch the data layer readers to return the supplied rows."""

    def _install(*, transactions=(), costs=(), allocations=()) -> dict[str, Mock]:
        mocks = {
            "iter_transactions": Mock(return_value=list(transactions)),
            "iter_input_costs": Mock(return_value=list(costs)),
            "iter_allocations": Mock(return_value=list(allocations)),
        }
        for name, mock in mocks.items():
            monkeypatch.setattr(data_manager, name, mock)
        return mocks

    return _install
