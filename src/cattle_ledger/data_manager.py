"""Data access layer for the cattle ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or deleting
   individual rows. Ledger rows are never updated in place.
"""


from __future__ import annotations

import configparser
import zipfile
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
INPUT_COSTS_SHEET = SheetName.INPUT_COSTS.value
ALLOCATIONS_SHEET = SheetName.ALLOCATIONS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    TRANSACTIONS_SHEET: [
        "TransactionID",
        "UserID",
        "Type",
        "Quantity",
        "PricePerHead",
        "TotalAmount",
        "Breed",
        "AverageWeightKg",
        "OccurredOn",
        "Notes",
        "InputCostDeduction",
        "CreatedAt",
        "UpdatedAt",
    ],
    INPUT_COSTS_SHEET: [
        "CostID",
        "UserID",
        "Category",
        "Amount",
        "OccurredOn",
        "Description",
        "CreatedAt",
        "UpdatedAt",
    ],
    ALLOCATIONS_SHEET: [
        "AllocationID",
        "UserID",
        "SaleTransactionID",
        "PurchaseTransactionID",
        "Quantity",
        "CostPerHead",
        "CreatedAt",
        "UpdatedAt",
    ],
}


class LedgerStoreError(RuntimeError):
    """Raised when the workbook cannot be read from or written to."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    farm_name: str
    schema_version: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``CattleTransactions`` sheet."""

    transaction_id: str
    user_id: str
    transaction_type: str
    quantity: int
    price_per_head: Decimal
    total_amount: Decimal
    breed: Optional[str]
    average_weight_kg: Optional[Decimal]
    occurred_on: date
    notes: Optional[str]
    input_cost_deduction: Decimal
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class InputCostRow:
    """In-memory view of a row from the ``InputCosts`` sheet."""

    cost_id: str
    user_id: str
    category: str
    amount: Decimal
    occurred_on: date
    description: Optional[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class AllocationRow:
    """In-memory view of a row from the ``SaleBatchAllocations`` sheet."""

    allocation_id: str
    user_id: str
    sale_transaction_id: str
    purchase_transaction_id: str
    quantity: int
    cost_per_head: Decimal
    created_at: str
    updated_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Session]`` section is
    optional: a missing or blank ``UserID`` means nobody is signed in, which
    leaves the ledger readable but blocks every write. Relative ``DataFile``
    entries are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings with a resolved data file path.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        farm_name = parser.get("System", "FarmName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    user_id = parser.get("Session", "UserID", fallback="").strip() or None

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        farm_name=farm_name,
        schema_version=schema_version,
        user_id=user_id,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        LedgerStoreError: If the file exists but cannot be loaded.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (OSError, ValueError, zipfile.BadZipFile, InvalidFileException) as exc:
        log.error("Unable to load workbook '%s': %s", data_file, exc)
        raise LedgerStoreError(f"Unable to load workbook {data_file}: {exc}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Raises:
        LedgerStoreError: If the operating system refuses the write, for
            example because the workbook is open in another program.
    """

    dest = Path(destination).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(dest)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise LedgerStoreError(f"Unable to save workbook {dest}: {exc}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    """Return ``sheet_name`` or raise :class:`LedgerStoreError` when absent."""

    try:
        return workbook[sheet_name]
    except KeyError as exc:
        log.error("Workbook is missing the '%s' sheet", sheet_name)
        raise LedgerStoreError(f"Workbook is missing the '{sheet_name}' sheet") from exc


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = get_sheet(workbook, sheet_name)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream cattle transactions from the ``CattleTransactions`` worksheet.

    Header and fully empty rows are skipped. Each remaining row is converted
    via :func:`deserialize_transaction`, so monetary columns arrive as
    :class:`~decimal.Decimal` and ``OccurredOn`` as :class:`~datetime.date`.

    Yields:
        TransactionRow: Normalized record for each populated row, in sheet
            order.
    """

    for raw in _iter_raw_rows(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def iter_input_costs(workbook: Workbook) -> Iterable[InputCostRow]:
    """Stream operating-expense rows from the ``InputCosts`` worksheet."""

    for raw in _iter_raw_rows(workbook, INPUT_COSTS_SHEET):
        yield deserialize_input_cost(raw)


def iter_allocations(workbook: Workbook) -> Iterable[AllocationRow]:
    """Stream sale-to-batch allocations from the ``SaleBatchAllocations`` sheet."""

    for raw in _iter_raw_rows(workbook, ALLOCATIONS_SHEET):
        yield deserialize_allocation(raw)


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction record to the ``CattleTransactions`` worksheet."""

    get_sheet(workbook, TRANSACTIONS_SHEET).append(serialize_transaction(record))


def append_input_cost(workbook: Workbook, record: InputCostRow) -> None:
    """Append an input cost record to the ``InputCosts`` worksheet."""

    get_sheet(workbook, INPUT_COSTS_SHEET).append(serialize_input_cost(record))


def append_allocation(workbook: Workbook, record: AllocationRow) -> None:
    """Append an allocation record to the ``SaleBatchAllocations`` worksheet."""

    get_sheet(workbook, ALLOCATIONS_SHEET).append(serialize_allocation(record))


def _header_map(sheet: Worksheet) -> dict[object, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = get_sheet(workbook, sheet_name)
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> bool:
    """Remove the first row whose ``key_column`` equals ``key_value``.

    Returns:
        bool: ``True`` when a row was removed, ``False`` when nothing matched.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        return False
    get_sheet(workbook, sheet_name).delete_rows(row_index)
    return True


def delete_allocations_for_sale(workbook: Workbook, sale_transaction_id: str) -> int:
    """Remove every allocation row belonging to ``sale_transaction_id``.

    Rows are deleted bottom-up so earlier indices stay valid.

    Returns:
        int: Number of allocation rows removed.
    """

    sheet = get_sheet(workbook, ALLOCATIONS_SHEET)
    key_col_index = _header_map(sheet)["SaleTransactionID"]
    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == sale_transaction_id
    ]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the worksheet column ordering."""

    return [
        record.transaction_id,
        record.user_id,
        record.transaction_type,
        record.quantity,
        record.price_per_head,
        record.total_amount,
        record.breed,
        record.average_weight_kg,
        record.occurred_on.isoformat(),
        record.notes,
        record.input_cost_deduction,
        record.created_at,
        record.updated_at,
    ]


def serialize_input_cost(record: InputCostRow) -> list[object]:
    """Convert an input cost dataclass into the worksheet column ordering."""

    return [
        record.cost_id,
        record.user_id,
        record.category,
        record.amount,
        record.occurred_on.isoformat(),
        record.description,
        record.created_at,
        record.updated_at,
    ]


def serialize_allocation(record: AllocationRow) -> list[object]:
    """Convert an allocation dataclass into the worksheet column ordering."""

    return [
        record.allocation_id,
        record.user_id,
        record.sale_transaction_id,
        record.purchase_transaction_id,
        record.quantity,
        record.cost_per_head,
        record.created_at,
        record.updated_at,
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_optional_decimal(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None else None


def _to_date(raw: object) -> date:
    # Cells edited by hand in Excel come back as datetimes.
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def _to_optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Monetary columns become :class:`~decimal.Decimal`, quantities become
    ``int`` and blank optional columns stay ``None``. A blank deduction is read
    as zero because purchases never carry one.
    """

    (
        transaction_id,
        user_id,
        transaction_type,
        quantity_raw,
        price_per_head_raw,
        total_amount_raw,
        breed,
        average_weight_raw,
        occurred_on_raw,
        notes,
        deduction_raw,
        created_at,
        updated_at,
    ) = raw_row

    return TransactionRow(
        transaction_id=str(transaction_id),
        user_id=str(user_id) if user_id is not None else "",
        transaction_type=str(transaction_type) if transaction_type is not None else "",
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        price_per_head=_to_decimal(price_per_head_raw, "0.00"),
        total_amount=_to_decimal(total_amount_raw, "0.00"),
        breed=_to_optional_text(breed),
        average_weight_kg=_to_optional_decimal(average_weight_raw),
        occurred_on=_to_date(occurred_on_raw),
        notes=_to_optional_text(notes),
        input_cost_deduction=_to_decimal(deduction_raw, "0.00"),
        created_at=str(created_at) if created_at is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
    )


def deserialize_input_cost(raw_row: Sequence[object]) -> InputCostRow:
    """Convert a raw worksheet row into a strongly typed input cost record."""

    (
        cost_id,
        user_id,
        category,
        amount_raw,
        occurred_on_raw,
        description,
        created_at,
        updated_at,
    ) = raw_row

    return InputCostRow(
        cost_id=str(cost_id),
        user_id=str(user_id) if user_id is not None else "",
        category=str(category) if category is not None else "",
        amount=_to_decimal(amount_raw, "0.00"),
        occurred_on=_to_date(occurred_on_raw),
        description=_to_optional_text(description),
        created_at=str(created_at) if created_at is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
    )


def deserialize_allocation(raw_row: Sequence[object]) -> AllocationRow:
    """Convert a raw worksheet row into a strongly typed allocation record."""

    (
        allocation_id,
        user_id,
        sale_transaction_id,
        purchase_transaction_id,
        quantity_raw,
        cost_per_head_raw,
        created_at,
        updated_at,
    ) = raw_row

    return AllocationRow(
        allocation_id=str(allocation_id),
        user_id=str(user_id) if user_id is not None else "",
        sale_transaction_id=str(sale_transaction_id),
        purchase_transaction_id=str(purchase_transaction_id),
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        cost_per_head=_to_decimal(cost_per_head_raw, "0.00"),
        created_at=str(created_at) if created_at is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
    )
