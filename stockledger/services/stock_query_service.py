from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.core.key_locks import StockKey
from stockledger.models.location import StockLocation
from stockledger.models.product import Product
from stockledger.models.stock import StockEntry
from stockledger.services.adjustment_service import load_entry
from stockledger.services.location_service import get_location


@dataclass(frozen=True)
class LocatedEntry:
    entry: StockEntry
    location: StockLocation


@dataclass(frozen=True)
class ProductStock:
    product_id: str
    entries: list[LocatedEntry]
    quantity: int
    reserved: int
    available: int
    has_unlimited: bool


@dataclass(frozen=True)
class ProductWithStock:
    product: Product
    entries: list[LocatedEntry] = field(default_factory=list)


def get_entry(db: Session, *, tenant_id: str, product_id: str, location_id: str) -> StockEntry:
    """
    Current state of one key. A key that was never mutated reads as a transient
    zero entry; it is not persisted until the first adjustment.
    """
    get_location(db, tenant_id=tenant_id, location_id=location_id)
    key = StockKey(tenant_id, product_id, location_id)
    entry = load_entry(db, key)
    if entry is not None:
        return entry
    return StockEntry(
        id=None,
        tenant_id=tenant_id,
        product_id=product_id,
        location_id=location_id,
        quantity=0,
        reserved=0,
        is_unlimited=False,
        version=0,
    )


def _located_entries(db: Session, *, tenant_id: str, product_ids: list[str] | None = None) -> list[LocatedEntry]:
    stmt = (
        select(StockEntry, StockLocation)
        .join(StockLocation, StockLocation.id == StockEntry.location_id)
        .where(StockEntry.tenant_id == tenant_id)
    )
    if product_ids is not None:
        stmt = stmt.where(StockEntry.product_id.in_(product_ids))
    rows = db.execute(
        stmt.order_by(StockLocation.is_default.desc(), StockLocation.name.asc())
    ).all()
    return [LocatedEntry(entry=entry, location=location) for entry, location in rows]


def get_product_stock(db: Session, *, tenant_id: str, product_id: str) -> ProductStock:
    entries = _located_entries(db, tenant_id=tenant_id, product_ids=[product_id])
    # Unlimited entries have no meaningful count, so they stay out of the totals.
    limited = [item.entry for item in entries if not item.entry.is_unlimited]
    return ProductStock(
        product_id=product_id,
        entries=entries,
        quantity=sum(entry.quantity for entry in limited),
        reserved=sum(entry.reserved for entry in limited),
        available=sum(entry.available for entry in limited),
        has_unlimited=any(item.entry.is_unlimited for item in entries),
    )


def get_all_with_stock(db: Session, *, tenant_id: str) -> list[ProductWithStock]:
    products = db.execute(
        select(Product).where(Product.tenant_id == tenant_id).order_by(Product.name.asc(), Product.id.asc())
    ).scalars().all()
    by_product: dict[str, list[LocatedEntry]] = defaultdict(list)
    for item in _located_entries(db, tenant_id=tenant_id):
        by_product[item.entry.product_id].append(item)
    return [ProductWithStock(product=product, entries=by_product.get(product.id, [])) for product in products]
