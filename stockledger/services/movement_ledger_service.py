import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, aliased

from stockledger.core.config import settings
from stockledger.core.errors import ValidationError
from stockledger.core.key_locks import StockKey
from stockledger.models.location import StockLocation
from stockledger.models.product import Product
from stockledger.models.stock import MOVEMENT_TYPES, StockEntry, StockMovement

_SCALAR_TYPES = (str, int, float, bool)


@dataclass(frozen=True)
class EntryState:
    quantity: int
    reserved: int


@dataclass(frozen=True)
class MovementFilter:
    product_id: str | None = None
    location_id: str | None = None
    movement_type: str | None = None
    reference_id: str | None = None
    before_id: str | None = None
    limit: int | None = None


@dataclass(frozen=True)
class MovementRecord:
    movement: StockMovement
    product_name: str | None
    product_code: str | None
    location_name: str | None
    from_location_name: str | None
    to_location_name: str | None


@dataclass(frozen=True)
class LedgerReplay:
    key: StockKey
    movements: int
    quantity: int
    reserved: int
    entry_quantity: int
    entry_reserved: int

    @property
    def consistent(self) -> bool:
        return self.quantity == self.entry_quantity and self.reserved == self.entry_reserved


def normalize_metadata(metadata: dict[str, Any] | None) -> dict[str, Any] | None:
    """Metadata is an open map of string keys to scalar values; nested structures are rejected."""
    if metadata is None:
        return None
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be a mapping")
    normalized: dict[str, Any] = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("metadata keys must be non-empty strings")
        if value is not None and not isinstance(value, _SCALAR_TYPES):
            raise ValidationError(f"metadata value for '{key}' must be a scalar")
        normalized[key.strip()] = value
    return normalized or None


def append_movement(
    db: Session,
    *,
    entry: StockEntry,
    before: EntryState,
    movement_type: str,
    reason: str | None = None,
    reference_id: str | None = None,
    performed_by: str | None = None,
    from_location_id: str | None = None,
    to_location_id: str | None = None,
    is_compensation: bool = False,
    metadata: dict[str, Any] | None = None,
) -> StockMovement:
    """
    Record the change already flushed onto `entry`. Must run inside the same
    transaction as the entry write, after the flush that assigned its new version.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type {movement_type}")
    movement = StockMovement(
        id=str(uuid.uuid4()),
        tenant_id=entry.tenant_id,
        product_id=entry.product_id,
        location_id=entry.location_id,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        movement_type=movement_type,
        quantity_change=entry.quantity - before.quantity,
        reserved_change=entry.reserved - before.reserved,
        quantity_before=before.quantity,
        quantity_after=entry.quantity,
        reserved_before=before.reserved,
        reserved_after=entry.reserved,
        entry_version=entry.version,
        is_compensation=is_compensation,
        reason=reason,
        reference_id=reference_id,
        performed_by=performed_by,
        metadata_json=metadata,
        created_at=datetime.now(timezone.utc),
    )
    db.add(movement)
    return movement


def resolve_limit(limit: int | None) -> int:
    if limit is None:
        return settings.stock_movements_default_limit
    if limit < 1:
        raise ValidationError("limit must be at least 1")
    return min(limit, settings.stock_movements_max_limit)


def list_movements(
    db: Session,
    *,
    tenant_id: str,
    filters: MovementFilter | None = None,
) -> list[MovementRecord]:
    """Most recent first. Pass the last returned id as `before_id` to continue."""
    filters = filters or MovementFilter()
    limit = resolve_limit(filters.limit)
    # Within one key the entry version is the commit order; clocks can step back.
    single_key = bool(filters.product_id and filters.location_id)

    location = aliased(StockLocation)
    from_location = aliased(StockLocation)
    to_location = aliased(StockLocation)
    stmt = (
        select(
            StockMovement,
            Product.name,
            Product.product_code,
            location.name,
            from_location.name,
            to_location.name,
        )
        .outerjoin(
            Product,
            and_(Product.id == StockMovement.product_id, Product.tenant_id == StockMovement.tenant_id),
        )
        .outerjoin(location, location.id == StockMovement.location_id)
        .outerjoin(from_location, from_location.id == StockMovement.from_location_id)
        .outerjoin(to_location, to_location.id == StockMovement.to_location_id)
        .where(StockMovement.tenant_id == tenant_id)
    )
    if filters.product_id:
        stmt = stmt.where(StockMovement.product_id == filters.product_id)
    if filters.location_id:
        stmt = stmt.where(StockMovement.location_id == filters.location_id)
    if filters.movement_type:
        if filters.movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"Unknown movement type {filters.movement_type}")
        stmt = stmt.where(StockMovement.movement_type == filters.movement_type)
    if filters.reference_id:
        stmt = stmt.where(StockMovement.reference_id == filters.reference_id)
    if filters.before_id:
        cursor = db.execute(
            select(StockMovement).where(
                StockMovement.id == filters.before_id,
                StockMovement.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if not cursor:
            raise ValidationError(f"Unknown movement cursor {filters.before_id}")
        if single_key:
            if (cursor.product_id, cursor.location_id) != (filters.product_id, filters.location_id):
                raise ValidationError(f"Movement cursor {filters.before_id} belongs to another stock entry")
            stmt = stmt.where(StockMovement.entry_version < cursor.entry_version)
        else:
            stmt = stmt.where(
                or_(
                    StockMovement.created_at < cursor.created_at,
                    and_(
                        StockMovement.created_at == cursor.created_at,
                        StockMovement.entry_version < cursor.entry_version,
                    ),
                    and_(
                        StockMovement.created_at == cursor.created_at,
                        StockMovement.entry_version == cursor.entry_version,
                        StockMovement.id < cursor.id,
                    ),
                )
            )

    if single_key:
        ordering = (StockMovement.entry_version.desc(),)
    else:
        ordering = (
            StockMovement.created_at.desc(),
            StockMovement.entry_version.desc(),
            StockMovement.id.desc(),
        )
    rows = db.execute(stmt.order_by(*ordering).limit(limit)).all()
    return [
        MovementRecord(
            movement=movement,
            product_name=product_name,
            product_code=product_code,
            location_name=location_name,
            from_location_name=from_name,
            to_location_name=to_name,
        )
        for movement, product_name, product_code, location_name, from_name, to_name in rows
    ]


def iter_movements(
    db: Session,
    *,
    tenant_id: str,
    filters: MovementFilter | None = None,
    page_size: int | None = None,
) -> Iterator[MovementRecord]:
    filters = filters or MovementFilter()
    before_id = filters.before_id
    while True:
        page = list_movements(
            db,
            tenant_id=tenant_id,
            filters=MovementFilter(
                product_id=filters.product_id,
                location_id=filters.location_id,
                movement_type=filters.movement_type,
                reference_id=filters.reference_id,
                before_id=before_id,
                limit=page_size,
            ),
        )
        if not page:
            return
        yield from page
        before_id = page[-1].movement.id


def movements_for_key(db: Session, *, key: StockKey) -> list[StockMovement]:
    return list(
        db.execute(
            select(StockMovement)
            .where(
                StockMovement.tenant_id == key.tenant_id,
                StockMovement.product_id == key.product_id,
                StockMovement.location_id == key.location_id,
            )
            .order_by(StockMovement.entry_version.asc())
        ).scalars().all()
    )


def replay_entry(db: Session, *, tenant_id: str, product_id: str, location_id: str) -> LedgerReplay:
    key = StockKey(tenant_id, product_id, location_id)
    movements = movements_for_key(db, key=key)
    quantity = 0
    reserved = 0
    for movement in movements:
        quantity += movement.quantity_change
        reserved += movement.reserved_change

    entry = db.execute(
        select(StockEntry).where(
            StockEntry.tenant_id == tenant_id,
            StockEntry.product_id == product_id,
            StockEntry.location_id == location_id,
        )
    ).scalar_one_or_none()
    return LedgerReplay(
        key=key,
        movements=len(movements),
        quantity=quantity,
        reserved=reserved,
        entry_quantity=entry.quantity if entry else 0,
        entry_reserved=entry.reserved if entry else 0,
    )
