"""Enumerations shared across the cattle ledger modules.

Keeps the identifiers used by the workbook layer, the rule engine and the
command-line front-end in one place so every layer agrees on the spelling of
transaction types, cost categories and sheet names.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version expected by every layer before it touches the ledger.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionType(str, Enum):
    """Enumerate the two kinds of cattle transaction recorded in the ledger."""

    BUY = "buy"
    SELL = "sell"


class CostCategory(str, Enum):
    """Enumerate the operating-expense categories an input cost can carry."""

    FEED = "Feed"
    VETERINARY = "Veterinary"
    EQUIPMENT = "Equipment"
    LABOR = "Labor"
    UTILITIES = "Utilities"
    INSURANCE = "Insurance"
    TRANSPORTATION = "Transportation"
    MAINTENANCE = "Maintenance"
    OTHER = "Other"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    TRANSACTIONS = "CattleTransactions"
    INPUT_COSTS = "InputCosts"
    ALLOCATIONS = "SaleBatchAllocations"


class RangeKey(str, Enum):
    """Named dashboard periods understood by :func:`periods.resolve_range`."""

    LAST_7 = "last7"
    LAST_30 = "last30"
    THIS_MONTH = "thisMonth"
    LAST_MONTH = "lastMonth"
    YEAR_TO_DATE = "ytd"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionType",
    "CostCategory",
    "SheetName",
    "RangeKey",
]
