import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stockledger.core.config import settings
from stockledger.core.errors import (
    ConflictError,
    InsufficientStockError,
    StockLedgerError,
    ValidationError,
)
from stockledger.core.key_locks import StockKey, stock_key_locks
from stockledger.core.observability import log_ledger_event
from stockledger.models.stock import MOVEMENT_TYPES, TRANSFER_MOVEMENT_TYPES, StockEntry, StockMovement
from stockledger.services.audit_service import log_audit_event
from stockledger.services.location_service import get_location, require_active_location
from stockledger.services.movement_ledger_service import EntryState, append_movement, normalize_metadata

T = TypeVar("T")

# Resolves (quantity_change, reserved_change) from the locked current state.
DeltaResolver = Callable[[StockEntry], tuple[int, int]]


@dataclass(frozen=True)
class AdjustmentOutcome:
    entry: StockEntry
    movement: StockMovement


@dataclass(frozen=True)
class AdjustmentRequest:
    product_id: str
    location_id: str
    quantity_change: int = 0
    reserved_change: int = 0
    reason: str | None = None
    reference_id: str | None = None
    movement_type: str = "ADJUSTMENT"
    unlimited_override: bool | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class BulkAdjustmentResult:
    index: int
    request: AdjustmentRequest
    entry: StockEntry | None = None
    error: StockLedgerError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _requested(quantity_change: int, reserved_change: int) -> dict[str, int]:
    return {"quantity_change": quantity_change, "reserved_change": reserved_change}


def _require_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def validate_deltas(quantity_change: Any, reserved_change: Any, *, key: StockKey | None = None) -> tuple[int, int]:
    quantity_change = _require_int("quantity_change", 0 if quantity_change is None else quantity_change)
    reserved_change = _require_int("reserved_change", 0 if reserved_change is None else reserved_change)
    if quantity_change == 0 and reserved_change == 0:
        raise ValidationError(
            "At least one of quantity_change or reserved_change must be non-zero",
            key=key,
            requested=_requested(quantity_change, reserved_change),
        )
    return quantity_change, reserved_change


def load_entry(db: Session, key: StockKey, *, for_update: bool = False) -> StockEntry | None:
    stmt = select(StockEntry).where(
        StockEntry.tenant_id == key.tenant_id,
        StockEntry.product_id == key.product_id,
        StockEntry.location_id == key.location_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()


def _new_entry(key: StockKey) -> StockEntry:
    return StockEntry(
        id=str(uuid.uuid4()),
        tenant_id=key.tenant_id,
        product_id=key.product_id,
        location_id=key.location_id,
        quantity=0,
        reserved=0,
        is_unlimited=False,
    )


def _backoff_delay(attempt: int) -> float:
    return min(
        settings.stock_retry_backoff_seconds * (2 ** attempt),
        settings.stock_retry_backoff_max_seconds,
    )


def commit_with_retry(
    db: Session,
    key: StockKey,
    work: Callable[[], T],
    *,
    operation: str,
    requested: dict[str, Any] | None = None,
) -> T:
    """
    Run `work` and commit it while holding the key's lock.

    A stale version or a racing insert of the same entry (another process got
    there first) rolls the attempt back and retries with exponential backoff;
    running out of attempts surfaces as ConflictError. Any other failure rolls
    back and propagates, so nothing before the commit is ever left behind.
    """
    with stock_key_locks.hold(key, requested=requested):
        attempt = 0
        while True:
            try:
                result = work()
                db.commit()
                return result
            except (StaleDataError, IntegrityError) as exc:
                db.rollback()
                if attempt >= settings.stock_max_retries:
                    log_ledger_event(
                        f"{operation}.conflict",
                        level=logging.WARNING,
                        key=key._asdict(),
                        attempts=attempt + 1,
                        error=type(exc).__name__,
                    )
                    raise ConflictError(
                        f"Stock entry changed concurrently; gave up after {attempt + 1} attempts",
                        key=key,
                        requested=requested,
                    ) from exc
                delay = _backoff_delay(attempt)
                attempt += 1
                log_ledger_event(
                    f"{operation}.retry",
                    level=logging.WARNING,
                    key=key._asdict(),
                    attempt=attempt,
                    delay_seconds=delay,
                    error=type(exc).__name__,
                )
                time.sleep(delay)
            except StockLedgerError as exc:
                db.rollback()
                log_ledger_event(
                    f"{operation}.rejected",
                    key=key._asdict(),
                    code=exc.code,
                    message=exc.message,
                    requested=requested,
                    current=exc.current,
                )
                raise
            except BaseException:
                db.rollback()
                raise


def _check_bounds(
    *,
    key: StockKey,
    entry: StockEntry,
    is_unlimited: bool,
    quantity_after: int,
    reserved_after: int,
    requested: dict[str, int],
) -> None:
    if is_unlimited:
        return
    if quantity_after < 0:
        raise InsufficientStockError(
            f"Adjustment would leave quantity at {quantity_after}",
            key=key,
            requested=requested,
            current=entry.snapshot(),
        )
    if reserved_after < 0:
        raise InsufficientStockError(
            f"Adjustment would leave reserved at {reserved_after}",
            key=key,
            requested=requested,
            current=entry.snapshot(),
        )
    if settings.stock_strict_reservations and reserved_after > quantity_after:
        raise InsufficientStockError(
            f"Reserved {reserved_after} would exceed quantity {quantity_after}",
            key=key,
            requested=requested,
            current=entry.snapshot(),
        )


def apply_adjustment(
    db: Session,
    *,
    key: StockKey,
    resolve: DeltaResolver,
    movement_type: str = "ADJUSTMENT",
    reason: str | None = None,
    reference_id: str | None = None,
    performed_by: str | None = None,
    unlimited_override: bool | None = None,
    metadata: dict[str, Any] | None = None,
    from_location_id: str | None = None,
    to_location_id: str | None = None,
    is_compensation: bool = False,
    require_available: int | None = None,
    allow_inactive_location: bool = False,
    requested: dict[str, int] | None = None,
) -> AdjustmentOutcome:
    """
    Shared write path for every entry mutation: lock the key, read (or lazily
    create) the entry, resolve and validate the deltas against that state, then
    write the entry and its movement in one transaction.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type {movement_type}", key=key, requested=requested)
    metadata = normalize_metadata(metadata)

    def work() -> AdjustmentOutcome:
        check_location = get_location if allow_inactive_location else require_active_location
        check_location(
            db,
            tenant_id=key.tenant_id,
            location_id=key.location_id,
            lock="share",
            key=key,
            requested=requested,
        )

        entry = load_entry(db, key, for_update=True)
        is_new = entry is None
        if is_new:
            entry = _new_entry(key)

        quantity_change, reserved_change = resolve(entry)
        attempt_requested = _requested(quantity_change, reserved_change)
        if quantity_change == 0 and reserved_change == 0:
            raise ValidationError(
                "Adjustment resolves to no change",
                key=key,
                requested=attempt_requested,
                current=entry.snapshot(),
            )

        before = EntryState(quantity=entry.quantity, reserved=entry.reserved)
        is_unlimited = entry.is_unlimited if unlimited_override is None else unlimited_override
        quantity_after = before.quantity + quantity_change
        reserved_after = before.reserved + reserved_change

        if require_available is not None and not is_unlimited and entry.available < require_available:
            raise InsufficientStockError(
                f"Only {entry.available} available, {require_available} requested",
                key=key,
                requested=attempt_requested,
                current=entry.snapshot(),
            )
        _check_bounds(
            key=key,
            entry=entry,
            is_unlimited=is_unlimited,
            quantity_after=quantity_after,
            reserved_after=reserved_after,
            requested=attempt_requested,
        )

        entry.quantity = quantity_after
        entry.reserved = reserved_after
        entry.is_unlimited = is_unlimited
        if is_new:
            db.add(entry)
        db.flush()

        movement = append_movement(
            db,
            entry=entry,
            before=before,
            movement_type=movement_type,
            reason=reason,
            reference_id=reference_id,
            performed_by=performed_by,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            is_compensation=is_compensation,
            metadata=metadata,
        )
        db.flush()
        return AdjustmentOutcome(entry=entry, movement=movement)

    outcome = commit_with_retry(db, key, work, operation="stock.adjust", requested=requested)
    log_ledger_event(
        "stock.adjust.committed",
        key=key._asdict(),
        movement_id=outcome.movement.id,
        movement_type=outcome.movement.movement_type,
        quantity_change=outcome.movement.quantity_change,
        reserved_change=outcome.movement.reserved_change,
        quantity_after=outcome.movement.quantity_after,
        reserved_after=outcome.movement.reserved_after,
        entry_version=outcome.movement.entry_version,
        reference_id=reference_id,
    )
    return outcome


def adjust_stock(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    location_id: str,
    quantity_change: int | None = None,
    reserved_change: int | None = None,
    reason: str | None = None,
    unlimited_override: bool | None = None,
    movement_type: str = "ADJUSTMENT",
    reference_id: str | None = None,
    performed_by: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> StockEntry:
    key = StockKey(tenant_id, product_id, location_id)
    quantity_change, reserved_change = validate_deltas(quantity_change, reserved_change, key=key)
    requested = _requested(quantity_change, reserved_change)
    if movement_type in TRANSFER_MOVEMENT_TYPES:
        raise ValidationError(
            f"{movement_type} movements are only written by transfers",
            key=key,
            requested=requested,
        )

    outcome = apply_adjustment(
        db,
        key=key,
        resolve=lambda _entry: (quantity_change, reserved_change),
        movement_type=movement_type,
        reason=reason,
        reference_id=reference_id,
        performed_by=performed_by,
        unlimited_override=unlimited_override,
        metadata=metadata,
        requested=requested,
    )
    return outcome.entry


def set_stock_levels(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    location_id: str,
    quantity: int | None = None,
    reserved: int | None = None,
    reason: str | None = None,
    reference_id: str | None = None,
    performed_by: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> StockEntry:
    """Move an entry to absolute targets; the deltas are taken against the locked current state."""
    key = StockKey(tenant_id, product_id, location_id)
    if quantity is None and reserved is None:
        raise ValidationError("At least one of quantity or reserved must be provided", key=key)
    if quantity is not None:
        _require_int("quantity", quantity)
    if reserved is not None:
        _require_int("reserved", reserved)

    def resolve(entry: StockEntry) -> tuple[int, int]:
        quantity_change = 0 if quantity is None else quantity - entry.quantity
        reserved_change = 0 if reserved is None else reserved - entry.reserved
        return quantity_change, reserved_change

    outcome = apply_adjustment(
        db,
        key=key,
        resolve=resolve,
        reason=reason,
        reference_id=reference_id,
        performed_by=performed_by,
        metadata=metadata,
        requested={"quantity": quantity, "reserved": reserved},
    )
    return outcome.entry


def adjust_many(
    db: Session,
    *,
    tenant_id: str,
    items: list[AdjustmentRequest],
    performed_by: str | None = None,
) -> list[BulkAdjustmentResult]:
    if not items:
        raise ValidationError("At least one adjustment is required")
    if len(items) > settings.stock_bulk_max_items:
        raise ValidationError(f"At most {settings.stock_bulk_max_items} adjustments per request")

    results: list[BulkAdjustmentResult] = []
    for index, item in enumerate(items):
        try:
            entry = adjust_stock(
                db,
                tenant_id=tenant_id,
                product_id=item.product_id,
                location_id=item.location_id,
                quantity_change=item.quantity_change,
                reserved_change=item.reserved_change,
                reason=item.reason,
                unlimited_override=item.unlimited_override,
                movement_type=item.movement_type,
                reference_id=item.reference_id,
                performed_by=performed_by,
                metadata=item.metadata,
            )
        except StockLedgerError as exc:
            results.append(BulkAdjustmentResult(index=index, request=item, error=exc))
            continue
        results.append(BulkAdjustmentResult(index=index, request=item, entry=entry))
    return results


def set_unlimited(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    location_id: str,
    is_unlimited: bool,
    performed_by: str | None = None,
) -> StockEntry:
    """Toggle the unlimited flag. Quantities do not change, so no movement is written."""
    key = StockKey(tenant_id, product_id, location_id)
    requested = {"is_unlimited": is_unlimited}

    def work() -> StockEntry:
        require_active_location(
            db,
            tenant_id=tenant_id,
            location_id=location_id,
            lock="share",
            key=key,
            requested=requested,
        )
        entry = load_entry(db, key, for_update=True)
        if entry is None:
            entry = _new_entry(key)
            db.add(entry)
        if not is_unlimited and (entry.quantity < 0 or entry.reserved < 0):
            raise ValidationError(
                "Cannot limit an entry with a negative balance; adjust it back to zero first",
                key=key,
                current=entry.snapshot(),
            )
        previous = bool(entry.is_unlimited)
        entry.is_unlimited = is_unlimited
        log_audit_event(
            db,
            tenant_id=tenant_id,
            actor_id=performed_by,
            action="stock.unlimited.set",
            target_type="stock_entry",
            target_id=entry.id,
            metadata_json={
                "product_id": product_id,
                "location_id": location_id,
                "previous": previous,
                "is_unlimited": is_unlimited,
            },
        )
        db.flush()
        return entry

    return commit_with_retry(db, key, work, operation="stock.unlimited", requested=requested)
