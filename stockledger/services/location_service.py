import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.core.errors import (
    LocationInactiveError,
    LocationInUseError,
    LocationNotFoundError,
    ValidationError,
)
from stockledger.core.key_locks import StockKey, stock_key_locks
from stockledger.models.location import LOCATION_TYPES, StockLocation
from stockledger.models.stock import StockEntry
from stockledger.services.audit_service import log_audit_event

_UPDATABLE_FIELDS = ("name", "description", "type", "address", "is_default", "is_active")


@dataclass(frozen=True)
class LocationWithCount:
    location: StockLocation
    entry_count: int


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Location name cannot be empty")
    return cleaned


def _clean_type(location_type: str) -> str:
    normalized = (location_type or "").strip().upper()
    if normalized not in LOCATION_TYPES:
        raise ValidationError(f"Location type must be one of {', '.join(LOCATION_TYPES)}")
    return normalized


def _clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _clear_other_defaults(db: Session, *, tenant_id: str, keep_id: str) -> None:
    db.execute(
        update(StockLocation)
        .where(
            StockLocation.tenant_id == tenant_id,
            StockLocation.is_default.is_(True),
            StockLocation.id != keep_id,
        )
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )


def get_location(
    db: Session,
    *,
    tenant_id: str,
    location_id: str,
    lock: str | None = None,
    key: StockKey | None = None,
    requested: dict[str, Any] | None = None,
) -> StockLocation:
    """
    Load a tenant's location. `lock="share"` keeps it from being deleted until
    the caller commits; `lock="update"` is taken by the delete itself.
    """
    stmt = select(StockLocation).where(
        StockLocation.id == location_id,
        StockLocation.tenant_id == tenant_id,
    )
    if lock == "share":
        stmt = stmt.with_for_update(read=True)
    elif lock == "update":
        stmt = stmt.with_for_update()
    elif lock is not None:
        raise ValueError(f"Unknown lock mode {lock}")
    if lock:
        stmt = stmt.execution_options(populate_existing=True)
    location = db.execute(stmt).scalar_one_or_none()
    if not location:
        raise LocationNotFoundError(location_id, key=key, requested=requested)
    return location


def require_active_location(
    db: Session,
    *,
    tenant_id: str,
    location_id: str,
    lock: str | None = None,
    key: StockKey | None = None,
    requested: dict[str, Any] | None = None,
) -> StockLocation:
    location = get_location(
        db,
        tenant_id=tenant_id,
        location_id=location_id,
        lock=lock,
        key=key,
        requested=requested,
    )
    if not location.is_active:
        raise LocationInactiveError(location_id, key=key, requested=requested)
    return location


def create_location(
    db: Session,
    *,
    tenant_id: str,
    name: str,
    location_type: str = "PHYSICAL",
    description: str | None = None,
    address: str | None = None,
    is_default: bool = False,
    is_active: bool = True,
    actor_id: str | None = None,
) -> StockLocation:
    location = StockLocation(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        name=_clean_name(name),
        type=_clean_type(location_type),
        description=_clean_optional(description),
        address=_clean_optional(address),
        is_default=is_default,
        is_active=is_active,
    )
    if is_default:
        _clear_other_defaults(db, tenant_id=tenant_id, keep_id=location.id)
    db.add(location)
    log_audit_event(
        db,
        tenant_id=tenant_id,
        actor_id=actor_id,
        action="location.create",
        target_type="stock_location",
        target_id=location.id,
        metadata_json={"name": location.name, "type": location.type, "is_default": location.is_default},
    )
    db.commit()
    db.refresh(location)
    return location


def list_locations(
    db: Session,
    *,
    tenant_id: str,
    include_inactive: bool = True,
) -> list[LocationWithCount]:
    entry_counts = (
        select(StockEntry.location_id, func.count(StockEntry.id).label("entry_count"))
        .where(StockEntry.tenant_id == tenant_id)
        .group_by(StockEntry.location_id)
        .subquery()
    )
    stmt = (
        select(StockLocation, func.coalesce(entry_counts.c.entry_count, 0))
        .outerjoin(entry_counts, entry_counts.c.location_id == StockLocation.id)
        .where(StockLocation.tenant_id == tenant_id)
    )
    if not include_inactive:
        stmt = stmt.where(StockLocation.is_active.is_(True))
    rows = db.execute(
        stmt.order_by(StockLocation.is_default.desc(), StockLocation.created_at.asc(), StockLocation.name.asc())
    ).all()
    return [LocationWithCount(location=location, entry_count=int(count)) for location, count in rows]


def count_location_entries(db: Session, *, tenant_id: str, location_id: str) -> int:
    return int(
        db.execute(
            select(func.count(StockEntry.id)).where(
                StockEntry.tenant_id == tenant_id,
                StockEntry.location_id == location_id,
            )
        ).scalar_one()
    )


def update_location(
    db: Session,
    *,
    tenant_id: str,
    location_id: str,
    actor_id: str | None = None,
    **changes: Any,
) -> StockLocation:
    unknown = set(changes) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown location fields: {', '.join(sorted(unknown))}")
    if not changes:
        raise ValidationError("At least one field must be provided")

    location = get_location(db, tenant_id=tenant_id, location_id=location_id)
    if "name" in changes:
        location.name = _clean_name(changes["name"])
    if "type" in changes:
        location.type = _clean_type(changes["type"])
    if "description" in changes:
        location.description = _clean_optional(changes["description"])
    if "address" in changes:
        location.address = _clean_optional(changes["address"])
    if changes.get("is_active") is not None:
        location.is_active = bool(changes["is_active"])
    if changes.get("is_default") is not None:
        location.is_default = bool(changes["is_default"])
        if location.is_default:
            _clear_other_defaults(db, tenant_id=tenant_id, keep_id=location.id)

    log_audit_event(
        db,
        tenant_id=tenant_id,
        actor_id=actor_id,
        action="location.update",
        target_type="stock_location",
        target_id=location.id,
        metadata_json={key: changes[key] for key in sorted(changes)},
    )
    db.commit()
    db.refresh(location)
    return location


def _location_entries(db: Session, *, tenant_id: str, location_id: str, for_update: bool = False) -> list[StockEntry]:
    stmt = select(StockEntry).where(
        StockEntry.tenant_id == tenant_id,
        StockEntry.location_id == location_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt.execution_options(populate_existing=True)).scalars().all()


def _blocking_entries(entries: list[StockEntry]) -> list[dict[str, Any]]:
    return [
        {
            "product_id": entry.product_id,
            "quantity": entry.quantity,
            "reserved": entry.reserved,
        }
        for entry in entries
        if entry.quantity != 0 or entry.reserved != 0
    ]


def delete_location(
    db: Session,
    *,
    tenant_id: str,
    location_id: str,
    actor_id: str | None = None,
) -> None:
    get_location(db, tenant_id=tenant_id, location_id=location_id)
    product_ids = db.execute(
        select(StockEntry.product_id).where(
            StockEntry.tenant_id == tenant_id,
            StockEntry.location_id == location_id,
        )
    ).scalars().all()
    keys = [StockKey(tenant_id, product_id, location_id) for product_id in product_ids]

    # Writers on these keys are parked until the location is gone.
    with stock_key_locks.hold(*keys):
        # Writers hold a shared lock on the location row, so this waits for them.
        location = get_location(db, tenant_id=tenant_id, location_id=location_id, lock="update")
        entries = _location_entries(db, tenant_id=tenant_id, location_id=location_id, for_update=True)
        blocking = _blocking_entries(entries)
        if blocking:
            db.rollback()
            raise LocationInUseError(location_id, blocking_entries=blocking)

        try:
            for entry in entries:
                db.delete(entry)
            db.flush()
            log_audit_event(
                db,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="location.delete",
                target_type="stock_location",
                target_id=location.id,
                metadata_json={"name": location.name, "empty_entries_removed": len(entries)},
            )
            db.delete(location)
            db.flush()
            db.commit()
        except IntegrityError as exc:
            # An entry was created at the location after the emptiness check.
            db.rollback()
            current = _location_entries(db, tenant_id=tenant_id, location_id=location_id)
            raise LocationInUseError(location_id, blocking_entries=_blocking_entries(current)) from exc
