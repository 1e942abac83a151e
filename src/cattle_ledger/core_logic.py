"""Business logic layer for the cattle ledger.

This module contains the rule engine around the append-mostly cattle ledger:
the derived batch availability view, the sale allocation validator, and the
write paths for purchases, sales and input costs. It consumes the Data Access
Layer (DAL) for all I/O while ensuring every mutation passes through the
domain rules first.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, CostCategory, TransactionType


CENT = Decimal("0.01")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced transaction, batch, or cost is unknown."""


class AuthorizationError(Exception):
    """Raised when a write is attempted without a signed-in user."""


class FieldValidationError(ValueError):
    """Raised when a free-text field cannot be parsed into a typed value."""

    def __init__(self, field_name: str, message: str) -> None:
        super().__init__(f"{field_name}: {message}")
        self.field = field_name
        self.message = message


class SaleRule(str, Enum):
    """Identify which sale validation rule rejected a submission."""

    ALLOCATIONS_REQUIRED = "allocations-required"
    QUANTITY_NOT_POSITIVE = "quantity-not-positive"
    UNKNOWN_BATCH = "unknown-batch"
    OVER_ALLOCATION = "over-allocation"
    NEGATIVE_DEDUCTION = "negative-deduction"
    DEDUCTION_EXCEEDS_POOL = "deduction-exceeds-pool"
    SALE_PRICE_NOT_POSITIVE = "sale-price-not-positive"


class SaleValidationError(BusinessRuleViolation):
    """Raised when a prospective sale fails one of the allocation rules.

    Carries the :class:`SaleRule` that failed, the offending field, and the
    batch identifier when the failure is specific to one batch, so callers can
    report the problem next to the right input.
    """

    def __init__(
        self,
        rule: SaleRule,
        message: str,
        *,
        field: str,
        batch_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.rule = rule
        self.field = field
        self.batch_id = batch_id


class AllocationConflictError(SaleValidationError):
    """Raised when the ledger changed between validation and commit."""


@dataclass(frozen=True)
class SessionContext:
    """Identity of the user on whose behalf operations run.

    ``user_id`` is ``None`` while signed out. Reads then see no rows and every
    write raises :class:`AuthorizationError`.
    """

    user_id: Optional[str] = None

    @property
    def is_signed_in(self) -> bool:
        return bool(self.user_id)

    def require_user(self) -> str:
        if not self.user_id:
            log.warning("Write rejected: no user is signed in")
            raise AuthorizationError("Sign in required to modify the ledger")
        return self.user_id


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and session used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    session: SessionContext = SessionContext()
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for buying a batch of cattle."""

    quantity: int
    price_per_head: Decimal
    occurred_on: Optional[date] = None
    breed: Optional[str] = None
    average_weight_kg: Optional[Decimal] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AllocationRequest:
    """One row of a sale form: take ``quantity`` head from ``batch_id``."""

    batch_id: str
    quantity: int


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling cattle drawn from one or more purchase batches."""

    allocations: Tuple[AllocationRequest, ...]
    total_sale_price: Decimal
    input_cost_deduction: Decimal = Decimal("0")
    occurred_on: Optional[date] = None
    breed: Optional[str] = None
    average_weight_kg: Optional[Decimal] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class InputCostCommand:
    """User intent for logging an operating expense."""

    category: CostCategory
    amount: Decimal
    occurred_on: Optional[date] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class AvailableBatch:
    """Derived view of a purchase batch and how many head remain unsold."""

    batch_id: str
    purchase_date: date
    breed: Optional[str]
    average_weight_kg: Optional[Decimal]
    price_per_head: Decimal
    purchase_notes: Optional[str]
    purchased_quantity: int
    sold_quantity: int
    remaining_quantity: int

    @property
    def is_selectable(self) -> bool:
        return self.remaining_quantity > 0


@dataclass(frozen=True)
class ValidatedSale:
    """Outcome of :func:`validate_sale` for a submission that passed every rule.

    ``allocations`` holds one entry per distinct batch, in the order the
    batches first appeared in the submission.
    """

    sale_quantity: int
    price_per_head: Decimal
    total_amount: Decimal
    input_cost_deduction: Decimal
    allocations: Tuple[AllocationRequest, ...]


@dataclass(frozen=True)
class RecordedSale:
    """Sale transaction together with the allocation rows written for it."""

    transaction: data_manager.TransactionRow
    allocations: Tuple[data_manager.AllocationRow, ...]


def _resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _owned_by(rows: Iterable[Any], user_id: Optional[str]) -> List[Any]:
    if not user_id:
        return []
    return [row for row in rows if row.user_id == user_id]


def _merge_rows(local: List[Any], stored: Iterable[Any], key: str) -> List[Any]:
    """Append ``stored`` rows whose ``key`` is not already among ``local``."""
    seen = {getattr(row, key) for row in local}
    return local + [row for row in stored if getattr(row, key) not in seen]


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the transaction cache bucket on demand.

    Only rows owned by the signed-in user are cached, so every read path built
    on this bucket is owner-scoped without further filtering.

    Returns:
        dict[str, Any]: Bucket containing ``all`` transactions in sheet order
            and a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        owned = _owned_by(data_manager.iter_transactions(context.workbook), context.session.user_id)
        bucket["all"] = owned
        bucket["by_id"] = {row.transaction_id: row for row in owned}
        log.debug("Populated transactions cache with %d entries", len(owned))
    return bucket


def _ensure_costs_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the input cost cache bucket on demand."""

    bucket = _get_cache_bucket(context, "costs")
    if "all" not in bucket:
        owned = _owned_by(data_manager.iter_input_costs(context.workbook), context.session.user_id)
        bucket["all"] = owned
        bucket["by_id"] = {row.cost_id: row for row in owned}
        log.debug("Populated input cost cache with %d entries", len(owned))
    return bucket


def _ensure_allocations_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the allocation cache bucket with per-sale and per-batch indexes."""

    bucket = _get_cache_bucket(context, "allocations")
    if "all" not in bucket:
        owned = _owned_by(data_manager.iter_allocations(context.workbook), context.session.user_id)
        by_sale: Dict[str, List[data_manager.AllocationRow]] = {}
        by_purchase: Dict[str, List[data_manager.AllocationRow]] = {}
        for row in owned:
            by_sale.setdefault(row.sale_transaction_id, []).append(row)
            by_purchase.setdefault(row.purchase_transaction_id, []).append(row)
        bucket["all"] = owned
        bucket["by_sale"] = by_sale
        bucket["by_purchase"] = by_purchase
        log.debug("Populated allocations cache with %d entries", len(owned))
    return bucket


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    user_id: Optional[str] = None,
) -> RuntimeContext:
    """Load configuration settings, the ledger workbook and the session.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        user_id (str | None): Signed-in user overriding ``[Session] UserID``
            from the configuration file.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    session = SessionContext(user_id=user_id or settings.user_id)
    log.info(
        "Loaded runtime context for workbook '%s' (user=%s)",
        settings.data_file,
        session.user_id or "<signed out>",
    )
    return RuntimeContext(settings=settings, workbook=workbook, session=session)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
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


def list_transactions(
    context: RuntimeContext,
    *,
    transaction_type: Optional[TransactionType] = None,
) -> List[data_manager.TransactionRow]:
    """Return the signed-in user's cattle transactions in workbook order.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        transaction_type (TransactionType | None): Restrict the listing to
            purchases or sales. ``None`` returns both.

    Returns:
        list[data_manager.TransactionRow]: Shallow copy of the cached rows.
    """
    rows = _ensure_transactions_cache(context)["all"]
    if transaction_type is None:
        return list(rows)
    return [row for row in rows if row.transaction_type == transaction_type.value]


def list_input_costs(context: RuntimeContext) -> List[data_manager.InputCostRow]:
    """Return the signed-in user's input costs in workbook order."""
    return list(_ensure_costs_cache(context)["all"])


def list_allocations(
    context: RuntimeContext,
    *,
    sale_transaction_id: Optional[str] = None,
) -> List[data_manager.AllocationRow]:
    """Return allocation rows, optionally only those belonging to one sale."""
    cache = _ensure_allocations_cache(context)
    if sale_transaction_id is None:
        return list(cache["all"])
    return list(cache["by_sale"].get(sale_transaction_id, []))


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve one of the signed-in user's transactions by identifier.

    Rows owned by other users are indistinguishable from rows that do not
    exist.

    Raises:
        MissingReferenceError: If no owned transaction has ``transaction_id``.
    """
    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc


def get_input_cost(context: RuntimeContext, cost_id: str) -> data_manager.InputCostRow:
    """Retrieve one of the signed-in user's input costs by identifier.

    Raises:
        MissingReferenceError: If no owned input cost has ``cost_id``.
    """
    cache = _ensure_costs_cache(context)
    try:
        return cache["by_id"][cost_id]
    except KeyError as exc:
        log.warning("Input cost lookup failed for id '%s'", cost_id)
        raise MissingReferenceError(f"Unknown input cost id: {cost_id}") from exc


def compute_available_batches(
    purchases: Iterable[data_manager.TransactionRow],
    allocations: Iterable[data_manager.AllocationRow],
) -> List[AvailableBatch]:
    """Project purchase transactions into batches with remaining quantities.

    ``remaining_quantity`` is the purchased quantity minus every allocation
    that references the batch. Fully sold batches are kept in the result for
    historical display; use :func:`selectable_batches` to hide them. Rows in
    ``purchases`` that are not ``buy`` transactions are ignored, which lets
    callers pass the whole transaction list.

    Args:
        purchases (Iterable[TransactionRow]): Ledger transactions to project.
        allocations (Iterable[AllocationRow]): Allocations recorded so far.

    Returns:
        list[AvailableBatch]: One entry per purchase, newest purchase first.
    """
    sold: Dict[str, int] = {}
    for allocation in allocations:
        sold[allocation.purchase_transaction_id] = (
            sold.get(allocation.purchase_transaction_id, 0) + allocation.quantity
        )

    batches = []
    for purchase in purchases:
        if purchase.transaction_type != TransactionType.BUY.value:
            continue
        sold_quantity = sold.get(purchase.transaction_id, 0)
        batches.append(
            AvailableBatch(
                batch_id=purchase.transaction_id,
                purchase_date=purchase.occurred_on,
                breed=purchase.breed,
                average_weight_kg=purchase.average_weight_kg,
                price_per_head=purchase.price_per_head,
                purchase_notes=purchase.notes,
                purchased_quantity=purchase.quantity,
                sold_quantity=sold_quantity,
                remaining_quantity=purchase.quantity - sold_quantity,
            )
        )

    batches.sort(key=lambda batch: batch.batch_id)
    batches.sort(key=lambda batch: batch.purchase_date, reverse=True)
    return batches


def selectable_batches(batches: Iterable[AvailableBatch]) -> List[AvailableBatch]:
    """Keep only batches that still have head available for sale."""
    return [batch for batch in batches if batch.is_selectable]


def list_available_batches(context: RuntimeContext) -> List[AvailableBatch]:
    """Compute the batch view over the signed-in user's ledger."""
    return compute_available_batches(
        list_transactions(context, transaction_type=TransactionType.BUY),
        list_allocations(context),
    )


def refresh_available_batches(context: RuntimeContext) -> List[AvailableBatch]:
    """Best-effort batch listing that fails open to an empty list.

    Used for background refreshes where a storage problem must not block the
    primary flow. The failure is logged, never silently dropped.
    """
    try:
        return list_available_batches(context)
    except data_manager.LedgerStoreError:
        log.exception("Batch refresh failed; showing no batches")
        return []


def compute_unaccounted_input_cost(
    transactions: Iterable[data_manager.TransactionRow],
    costs: Iterable[data_manager.InputCostRow],
) -> Decimal:
    """Return operating costs not yet deducted against any sale.

    Equal to ``sum(cost.amount) - sum(sell.input_cost_deduction)`` over the
    supplied rows.
    """
    total_costs = sum((cost.amount for cost in costs), Decimal("0"))
    total_deducted = sum(
        (
            row.input_cost_deduction
            for row in transactions
            if row.transaction_type == TransactionType.SELL.value
        ),
        Decimal("0"),
    )
    return total_costs - total_deducted


def calculate_unaccounted_input_cost(context: RuntimeContext) -> Decimal:
    """Compute the shared deduction pool for the signed-in user."""
    pool = compute_unaccounted_input_cost(list_transactions(context), list_input_costs(context))
    log.debug("Unaccounted input cost pool: %s", pool)
    return pool


def _reject(rule: SaleRule, message: str, *, field: str, batch_id: Optional[str] = None) -> SaleValidationError:
    log.error("Sale rejected (%s): %s", rule.value, message)
    return SaleValidationError(rule, message, field=field, batch_id=batch_id)


def validate_sale(
    allocation_requests: Sequence[AllocationRequest],
    available_batches: Iterable[AvailableBatch],
    pending_allocations: Optional[Mapping[str, int]],
    unaccounted_input_cost: Decimal,
    proposed_deduction: Decimal,
    proposed_total_sale_price: Decimal,
) -> ValidatedSale:
    """Check a prospective sale against batch availability and the cost pool.

    Rules are applied in a fixed order and the first failure wins:

    1. At least one allocation; every allocation has a positive quantity and
       names a known batch.
    2. Per batch, the quantities requested in this submission may not exceed
       ``remaining_quantity`` minus ``pending_allocations[batch]`` (quantity
       already claimed but not yet reflected in the batch view).
    3. The sale quantity is the sum of the requested quantities.
    4. The deduction is not negative, and a positive deduction may not exceed
       ``unaccounted_input_cost``.
    5. The total sale price is positive; the price per head is the total
       divided by the sale quantity, rounded half-up to cents.

    The check runs against a snapshot and writes nothing.

    Args:
        allocation_requests (Sequence[AllocationRequest]): Submitted rows.
        available_batches (Iterable[AvailableBatch]): Current batch view.
        pending_allocations (Mapping[str, int] | None): Batch id to quantity
            already claimed elsewhere.
        unaccounted_input_cost (Decimal): Pool of costs not yet deducted.
        proposed_deduction (Decimal): Deduction requested for this sale.
        proposed_total_sale_price (Decimal): Agreed price for the whole sale.

    Returns:
        ValidatedSale: Quantities and prices to record.

    Raises:
        SaleValidationError: Identifying the failed rule, field and batch.
    """
    if not allocation_requests:
        raise _reject(
            SaleRule.ALLOCATIONS_REQUIRED,
            "Select at least one batch to sell from",
            field="allocations",
        )

    batches_by_id = {batch.batch_id: batch for batch in available_batches}
    for index, request in enumerate(allocation_requests):
        if request.quantity <= 0:
            raise _reject(
                SaleRule.QUANTITY_NOT_POSITIVE,
                f"Quantity for batch {request.batch_id} must be greater than zero",
                field=f"allocations[{index}].quantity",
                batch_id=request.batch_id,
            )
        if request.batch_id not in batches_by_id:
            raise _reject(
                SaleRule.UNKNOWN_BATCH,
                f"Unknown batch: {request.batch_id}",
                field=f"allocations[{index}].batch_id",
                batch_id=request.batch_id,
            )

    requested: Dict[str, int] = {}
    for request in allocation_requests:
        requested[request.batch_id] = requested.get(request.batch_id, 0) + request.quantity

    pending = pending_allocations or {}
    for batch_id, quantity in requested.items():
        available = batches_by_id[batch_id].remaining_quantity - pending.get(batch_id, 0)
        if quantity > available:
            raise _reject(
                SaleRule.OVER_ALLOCATION,
                f"Batch {batch_id} has {max(available, 0)} head available; {quantity} requested",
                field="allocations",
                batch_id=batch_id,
            )

    sale_quantity = sum(requested.values())

    if proposed_deduction < Decimal("0"):
        raise _reject(
            SaleRule.NEGATIVE_DEDUCTION,
            "Input cost deduction must be zero or positive",
            field="input_cost_deduction",
        )
    if proposed_deduction > Decimal("0") and proposed_deduction > unaccounted_input_cost:
        raise _reject(
            SaleRule.DEDUCTION_EXCEEDS_POOL,
            f"Input cost deduction {proposed_deduction} exceeds unaccounted input cost {unaccounted_input_cost}",
            field="input_cost_deduction",
        )

    if proposed_total_sale_price <= Decimal("0"):
        raise _reject(
            SaleRule.SALE_PRICE_NOT_POSITIVE,
            "Total sale price must be greater than zero",
            field="total_sale_price",
        )

    price_per_head = (proposed_total_sale_price / Decimal(sale_quantity)).quantize(CENT, rounding=ROUND_HALF_UP)
    return ValidatedSale(
        sale_quantity=sale_quantity,
        price_per_head=price_per_head,
        total_amount=proposed_total_sale_price,
        input_cost_deduction=proposed_deduction,
        allocations=tuple(AllocationRequest(batch_id, quantity) for batch_id, quantity in requested.items()),
    )


def _guard_sale_commit(
    context: RuntimeContext,
    user_id: str,
    validated: ValidatedSale,
) -> Dict[str, AvailableBatch]:
    """Re-check a validated sale against the saved ledger right before writing.

    The in-memory workbook is read without the cache, then the data file is
    reopened and any rows saved there by another session since this context
    was loaded are merged in by identifier. Rows this context appended but has
    not saved yet stay visible. A data file that does not exist yet
    contributes nothing.

    Returns:
        dict[str, AvailableBatch]: Fresh batch view keyed by batch id, used to
            snapshot ``cost_per_head``.

    Raises:
        AllocationConflictError: If the sale no longer fits the ledger.
        LedgerStoreError: If the data file exists but cannot be reopened.
    """
    transactions = _owned_by(data_manager.iter_transactions(context.workbook), user_id)
    allocations = _owned_by(data_manager.iter_allocations(context.workbook), user_id)
    costs = _owned_by(data_manager.iter_input_costs(context.workbook), user_id)

    data_file = Path(context.settings.data_file)
    if data_file.exists():
        stored = data_manager.refresh_workbook(data_file)
        transactions = _merge_rows(
            transactions,
            _owned_by(data_manager.iter_transactions(stored), user_id),
            "transaction_id",
        )
        allocations = _merge_rows(
            allocations,
            _owned_by(data_manager.iter_allocations(stored), user_id),
            "allocation_id",
        )
        costs = _merge_rows(costs, _owned_by(data_manager.iter_input_costs(stored), user_id), "cost_id")
        log.debug("Commit guard merged saved rows from '%s'", data_file)

    fresh = compute_available_batches(transactions, allocations)
    try:
        validate_sale(
            validated.allocations,
            fresh,
            None,
            compute_unaccounted_input_cost(transactions, costs),
            validated.input_cost_deduction,
            validated.total_amount,
        )
    except SaleValidationError as exc:
        log.error("Sale conflicts with ledger changes made since validation: %s", exc)
        raise AllocationConflictError(
            exc.rule,
            f"Ledger changed before the sale was saved: {exc}",
            field=exc.field,
            batch_id=exc.batch_id,
        ) from exc
    return {batch.batch_id: batch for batch in fresh}


def record_purchase(context: RuntimeContext, command: PurchaseCommand) -> data_manager.TransactionRow:
    """Validate and append a ``buy`` transaction that opens a new batch.

    The total amount is always ``quantity * price_per_head``; callers cannot
    supply it separately.

    Raises:
        AuthorizationError: If nobody is signed in.
        ValueError: If the quantity, price or weight fails validation.
    """
    user_id = context.session.require_user()
    require_positive_quantity(command.quantity)
    require_nonnegative_money(command.price_per_head)
    if command.average_weight_kg is not None and command.average_weight_kg <= Decimal("0"):
        log.error("Average weight validation failed: %s", command.average_weight_kg)
        raise ValueError("Average weight must be greater than zero")

    timestamp = _resolve_timestamp()
    transaction = build_purchase_transaction(command, user_id=user_id, timestamp=timestamp)
    data_manager.append_transaction(context.workbook, transaction)
    _invalidate_cache(context, "transactions")
    log.info(
        "Recorded purchase '%s' (quantity=%s, price_per_head=%s, total=%s)",
        transaction.transaction_id,
        transaction.quantity,
        transaction.price_per_head,
        transaction.total_amount,
    )
    return transaction


def record_sale(context: RuntimeContext, command: SaleCommand) -> RecordedSale:
    """Validate a sale, then append it together with its batch allocations.

    The workflow validates against the cached ledger snapshot, re-checks the
    result against the saved data file, and only then writes the sale row
    and one allocation row per distinct batch. Each allocation snapshots the
    batch's ``price_per_head`` as ``cost_per_head`` at this moment so later
    edits elsewhere never change historical cost basis.

    Args:
        context (RuntimeContext): Runtime context providing workbook access,
            caches and the session.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        RecordedSale: The sale transaction and the allocation rows written.

    Raises:
        AuthorizationError: If nobody is signed in.
        SaleValidationError: If any allocation rule fails.
        AllocationConflictError: If the ledger changed between validation and
            commit in a way that breaks a rule.
    """
    user_id = context.session.require_user()
    validated = validate_sale(
        command.allocations,
        list_available_batches(context),
        None,
        calculate_unaccounted_input_cost(context),
        command.input_cost_deduction,
        command.total_sale_price,
    )
    batches_by_id = _guard_sale_commit(context, user_id, validated)

    timestamp = _resolve_timestamp()
    transaction = build_sale_transaction(command, validated, user_id=user_id, timestamp=timestamp)
    allocations = build_allocation_rows(
        validated,
        sale_transaction_id=transaction.transaction_id,
        batches_by_id=batches_by_id,
        user_id=user_id,
        timestamp=timestamp,
    )
    data_manager.append_transaction(context.workbook, transaction)
    for allocation in allocations:
        data_manager.append_allocation(context.workbook, allocation)
    _invalidate_cache(context, "transactions", "allocations")
    log.info(
        "Recorded sale '%s' of %s head across %d batch(es) (total=%s, deduction=%s)",
        transaction.transaction_id,
        transaction.quantity,
        len(allocations),
        transaction.total_amount,
        transaction.input_cost_deduction,
    )
    return RecordedSale(transaction=transaction, allocations=tuple(allocations))


def _check_input_cost(command: InputCostCommand) -> None:
    if not isinstance(command.category, CostCategory):
        log.error("Unsupported cost category provided: %s", command.category)
        raise BusinessRuleViolation(f"Unsupported cost category: {command.category}")
    require_positive_money(command.amount)


def record_input_cost(context: RuntimeContext, command: InputCostCommand) -> data_manager.InputCostRow:
    """Validate and append a single operating expense.

    Raises:
        AuthorizationError: If nobody is signed in.
        BusinessRuleViolation: If the category is not a :class:`CostCategory`.
        ValueError: If the amount is not strictly positive.
    """
    return record_input_costs(context, [command])[0]


def record_input_costs(
    context: RuntimeContext,
    commands: Sequence[InputCostCommand],
) -> List[data_manager.InputCostRow]:
    """Validate a batch of operating expenses and append them together.

    Every command is validated before the first row is written, so a single
    bad entry leaves the ledger untouched.

    Raises:
        AuthorizationError: If nobody is signed in.
        BusinessRuleViolation: If ``commands`` is empty or a category is
            unsupported.
        ValueError: If any amount is not strictly positive.
    """
    user_id = context.session.require_user()
    if not commands:
        log.error("Input cost batch rejected: nothing selected")
        raise BusinessRuleViolation("No input costs selected")
    for command in commands:
        _check_input_cost(command)

    timestamp = _resolve_timestamp()
    rows = [build_input_cost(command, user_id=user_id, timestamp=timestamp) for command in commands]
    for row in rows:
        data_manager.append_input_cost(context.workbook, row)
    _invalidate_cache(context, "costs")
    log.info(
        "Recorded %d input cost(s) totalling %s",
        len(rows),
        sum((row.amount for row in rows), Decimal("0")),
    )
    return rows


def delete_transaction(context: RuntimeContext, transaction_id: str) -> None:
    """Delete one of the signed-in user's transactions.

    Deleting a sale also deletes its allocations, which returns the sold head
    to their batches and releases its deduction back to the pool. A purchase
    batch can only be deleted while no sale draws on it.

    Raises:
        AuthorizationError: If nobody is signed in.
        MissingReferenceError: If the user owns no such transaction.
        BusinessRuleViolation: If a purchase still has allocations.
    """
    context.session.require_user()
    transaction = get_transaction(context, transaction_id)

    if transaction.transaction_type == TransactionType.BUY.value:
        dependants = _ensure_allocations_cache(context)["by_purchase"].get(transaction_id, [])
        if dependants:
            log.error(
                "Cannot delete batch '%s': %d allocation(s) reference it",
                transaction_id,
                len(dependants),
            )
            raise BusinessRuleViolation(
                f"Batch {transaction_id} has sales allocated against it; delete those sales first"
            )
        removed_allocations = 0
    else:
        removed_allocations = data_manager.delete_allocations_for_sale(context.workbook, transaction_id)

    data_manager.delete_row(
        context.workbook,
        data_manager.TRANSACTIONS_SHEET,
        "TransactionID",
        transaction_id,
    )
    _invalidate_cache(context, "transactions", "allocations")
    log.info(
        "Deleted %s transaction '%s' (%d allocation(s) removed)",
        transaction.transaction_type,
        transaction_id,
        removed_allocations,
    )


def delete_input_cost(context: RuntimeContext, cost_id: str) -> None:
    """Delete one of the signed-in user's input costs.

    A cost can only go while the unaccounted pool still covers it; once sales
    have deducted against it, deleting it would drive the pool below zero.

    Raises:
        AuthorizationError: If nobody is signed in.
        MissingReferenceError: If the user owns no such input cost.
        BusinessRuleViolation: If the pool would end up negative.
    """
    context.session.require_user()
    cost = get_input_cost(context, cost_id)
    remaining_pool = calculate_unaccounted_input_cost(context) - cost.amount
    if remaining_pool < Decimal("0"):
        log.error(
            "Cannot delete input cost '%s': unaccounted pool would drop to %s",
            cost_id,
            remaining_pool,
        )
        raise BusinessRuleViolation(
            f"Input cost {cost_id} is already deducted against sales; "
            "delete or reduce those deductions first"
        )
    data_manager.delete_row(context.workbook, data_manager.INPUT_COSTS_SHEET, "CostID", cost_id)
    _invalidate_cache(context, "costs")
    log.info("Deleted input cost '%s'", cost_id)


def generate_record_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    Args:
        prefix (str): One-letter designator: ``T`` transactions, ``C`` input
            costs, ``A`` allocations.
        when (datetime | None): Timestamp to embed. Defaults to now in UTC.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{suffix}``.

    The random six-character suffix keeps identifiers unique when several rows
    share one timestamp, as the allocations of a single sale do.
    """
    when = when or _resolve_timestamp()
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6].upper()}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a head count is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is zero, negative or not an integer.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_positive_money(amount: Decimal) -> None:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValueError: If ``amount`` is zero or negative.
    """
    if amount <= Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with the same settings and session, a
            newly opened workbook and an empty cache.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, session=context.session)


def build_purchase_transaction(
    command: PurchaseCommand,
    *,
    user_id: str,
    timestamp: datetime,
) -> data_manager.TransactionRow:
    """Materialize a :class:`PurchaseCommand` into a DAL transaction row."""
    return data_manager.TransactionRow(
        transaction_id=generate_record_id(prefix="T", when=timestamp),
        user_id=user_id,
        transaction_type=TransactionType.BUY.value,
        quantity=command.quantity,
        price_per_head=command.price_per_head,
        total_amount=command.price_per_head * command.quantity,
        breed=command.breed,
        average_weight_kg=command.average_weight_kg,
        occurred_on=command.occurred_on or timestamp.date(),
        notes=command.notes,
        input_cost_deduction=Decimal("0.00"),
        created_at=timestamp.isoformat(),
        updated_at=timestamp.isoformat(),
    )


def build_sale_transaction(
    command: SaleCommand,
    validated: ValidatedSale,
    *,
    user_id: str,
    timestamp: datetime,
) -> data_manager.TransactionRow:
    """Materialize a validated sale into a DAL transaction row.

    Quantity and price per head come from the validation outcome; the total
    amount is the agreed sale price exactly as submitted.
    """
    return data_manager.TransactionRow(
        transaction_id=generate_record_id(prefix="T", when=timestamp),
        user_id=user_id,
        transaction_type=TransactionType.SELL.value,
        quantity=validated.sale_quantity,
        price_per_head=validated.price_per_head,
        total_amount=validated.total_amount,
        breed=command.breed,
        average_weight_kg=command.average_weight_kg,
        occurred_on=command.occurred_on or timestamp.date(),
        notes=command.notes,
        input_cost_deduction=validated.input_cost_deduction,
        created_at=timestamp.isoformat(),
        updated_at=timestamp.isoformat(),
    )


def build_allocation_rows(
    validated: ValidatedSale,
    *,
    sale_transaction_id: str,
    batches_by_id: Mapping[str, AvailableBatch],
    user_id: str,
    timestamp: datetime,
) -> List[data_manager.AllocationRow]:
    """Create one allocation row per batch, snapshotting the batch cost."""
    return [
        data_manager.AllocationRow(
            allocation_id=generate_record_id(prefix="A", when=timestamp),
            user_id=user_id,
            sale_transaction_id=sale_transaction_id,
            purchase_transaction_id=request.batch_id,
            quantity=request.quantity,
            cost_per_head=batches_by_id[request.batch_id].price_per_head,
            created_at=timestamp.isoformat(),
            updated_at=timestamp.isoformat(),
        )
        for request in validated.allocations
    ]


def build_input_cost(
    command: InputCostCommand,
    *,
    user_id: str,
    timestamp: datetime,
) -> data_manager.InputCostRow:
    """Materialize an :class:`InputCostCommand` into a DAL input cost row."""
    return data_manager.InputCostRow(
        cost_id=generate_record_id(prefix="C", when=timestamp),
        user_id=user_id,
        category=command.category.value,
        amount=command.amount,
        occurred_on=command.occurred_on or timestamp.date(),
        description=command.description,
        created_at=timestamp.isoformat(),
        updated_at=timestamp.isoformat(),
    )
