"""Bulk ingestion of operating expenses from bank statement exports.

A statement is a CSV file with the header ``Date,Description,Amount,Balance``.
Debits (negative amounts) become import candidates; credits are ignored. The
caller then assigns categories, picks which candidates to keep and commits
them as input costs in one write.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from io import StringIO
from pathlib import Path
from typing import Iterable, List, Optional

from . import core_logic, data_manager, fields, log
from .constants import CostCategory


REQUIRED_COLUMNS = ("Date", "Description", "Amount")


@dataclass
class ImportCandidate:
    """A debit line from the statement, awaiting review before import."""

    row_number: int
    occurred_on: date
    description: str
    amount: Decimal
    category: CostCategory = CostCategory.OTHER
    selected: bool = False

    def to_command(self) -> core_logic.InputCostCommand:
        return core_logic.InputCostCommand(
            category=self.category,
            amount=self.amount,
            occurred_on=self.occurred_on,
            description=self.description or None,
        )


def parse_bank_statement(content: str) -> List[ImportCandidate]:
    """Extract expense candidates from the text of a statement export.

    Dates are ``YYYYMMDD`` (ISO dates are accepted too). Thousands separators
    are stripped from amounts, and only negative amounts are kept, as their
    absolute value. Rows whose date or amount cannot be parsed are skipped
    with a warning so one malformed line does not block the whole file.

    Args:
        content (str): Full CSV text including the header row.

    Returns:
        list[ImportCandidate]: Candidates in file order, all categorised as
            ``Other`` and unselected.

    Raises:
        FieldValidationError: If the header lacks a required column.
    """
    reader = csv.DictReader(StringIO(content))
    headers = {header.strip() for header in (reader.fieldnames or []) if header}
    missing = [column for column in REQUIRED_COLUMNS if column not in headers]
    if missing:
        log.error("Bank statement header is missing columns: %s", ", ".join(missing))
        raise core_logic.FieldValidationError(
            "csv", f"header must include {', '.join(REQUIRED_COLUMNS)}; missing {', '.join(missing)}"
        )

    candidates = []
    for row_number, raw in enumerate(reader, start=2):
        row = {key.strip(): (value or "").strip() for key, value in raw.items() if key is not None}
        if not any(row.values()):
            continue
        try:
            occurred_on = fields.parse_date(row["Date"], field="Date")
            amount = fields.parse_money(row["Amount"], field="Amount")
        except core_logic.FieldValidationError as exc:
            log.warning("Skipping statement row %d: %s", row_number, exc)
            continue
        if amount >= Decimal("0"):
            continue
        candidates.append(
            ImportCandidate(
                row_number=row_number,
                occurred_on=occurred_on,
                description=row["Description"],
                amount=abs(amount),
            )
        )

    log.info("Parsed %d expense candidate(s) from bank statement", len(candidates))
    return candidates


def read_bank_statement(path: Path) -> List[ImportCandidate]:
    """Read and parse a statement file from disk."""
    content = Path(path).expanduser().read_text(encoding="utf-8-sig")
    return parse_bank_statement(content)


def select_candidates(
    candidates: Iterable[ImportCandidate],
    *,
    row_numbers: Optional[Iterable[int]] = None,
    category: Optional[CostCategory] = None,
) -> List[ImportCandidate]:
    """Mark candidates as selected and optionally assign them a category.

    ``row_numbers=None`` selects every candidate.
    """
    wanted = set(row_numbers) if row_numbers is not None else None
    chosen = []
    for candidate in candidates:
        if wanted is not None and candidate.row_number not in wanted:
            continue
        candidate.selected = True
        if category is not None:
            candidate.category = category
        chosen.append(candidate)
    return chosen


def commit_import(
    context: core_logic.RuntimeContext,
    candidates: Iterable[ImportCandidate],
) -> List[data_manager.InputCostRow]:
    """Record the selected candidates as input costs.

    Raises:
        AuthorizationError: If nobody is signed in.
        BusinessRuleViolation: If no candidate is selected.
    """
    context.session.require_user()
    selected = [candidate for candidate in candidates if candidate.selected]
    if not selected:
        log.error("Import rejected: no rows selected")
        raise core_logic.BusinessRuleViolation("Select at least one row to import")
    rows = core_logic.record_input_costs(context, [candidate.to_command() for candidate in selected])
    log.info("Imported %d input cost(s) from bank statement", len(rows))
    return rows
