from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from stockledger.core.api_docs import error_responses
from stockledger.core.deps import get_db
from stockledger.core.tenant_context import TenantContext, get_tenant_context
from stockledger.models.location import StockLocation
from stockledger.models.stock import StockEntry, StockMovement
from stockledger.schemas.common import CursorMeta
from stockledger.schemas.stock import (
    LedgerReplayOut,
    MovementType,
    ProductStockOut,
    ProductWithStockListOut,
    ProductWithStockOut,
    StockAdjustIn,
    StockBulkAdjustIn,
    StockBulkAdjustOut,
    StockBulkItemOut,
    StockEntryOut,
    StockLocationRefOut,
    StockMovementListOut,
    StockMovementOut,
    StockSetLevelsIn,
    StockTransferIn,
    StockTransferOut,
    StockUnlimitedIn,
)
from stockledger.services.adjustment_service import (
    AdjustmentRequest,
    adjust_many,
    adjust_stock,
    set_stock_levels,
    set_unlimited,
)
from stockledger.services.movement_ledger_service import (
    MovementFilter,
    MovementRecord,
    list_movements,
    replay_entry,
    resolve_limit,
)
from stockledger.services.stock_query_service import (
    LocatedEntry,
    get_all_with_stock,
    get_entry,
    get_product_stock,
)
from stockledger.services.transfer_service import transfer_stock

router = APIRouter(prefix="/stock", tags=["stock"])


def _location_ref_out(location: StockLocation) -> StockLocationRefOut:
    return StockLocationRefOut(
        id=location.id,
        name=location.name,
        type=location.type,
        is_default=location.is_default,
        is_active=location.is_active,
    )


def _entry_out(entry: StockEntry, *, location: StockLocation | None = None) -> StockEntryOut:
    return StockEntryOut(
        id=entry.id,
        product_id=entry.product_id,
        location_id=entry.location_id,
        quantity=entry.reported_quantity,
        reserved=entry.reserved,
        available=entry.reported_available,
        is_unlimited=bool(entry.is_unlimited),
        ledger_quantity=entry.quantity,
        version=entry.version or 0,
        location=_location_ref_out(location) if location is not None else None,
    )


def _located_entry_out(item: LocatedEntry) -> StockEntryOut:
    return _entry_out(item.entry, location=item.location)


def _movement_out(movement: StockMovement, record: MovementRecord | None = None) -> StockMovementOut:
    return StockMovementOut(
        id=movement.id,
        product_id=movement.product_id,
        product_name=record.product_name if record else None,
        product_code=record.product_code if record else None,
        location_id=movement.location_id,
        location_name=record.location_name if record else None,
        from_location_id=movement.from_location_id,
        from_location_name=record.from_location_name if record else None,
        to_location_id=movement.to_location_id,
        to_location_name=record.to_location_name if record else None,
        type=movement.movement_type,
        quantity_change=movement.quantity_change,
        reserved_change=movement.reserved_change,
        quantity_before=movement.quantity_before,
        quantity_after=movement.quantity_after,
        reserved_before=movement.reserved_before,
        reserved_after=movement.reserved_after,
        entry_version=movement.entry_version,
        is_compensation=movement.is_compensation,
        reason=movement.reason,
        reference_id=movement.reference_id,
        performed_by=movement.performed_by,
        metadata=movement.metadata_json,
        created_at=movement.created_at,
    )


@router.post(
    "/adjust",
    response_model=StockEntryOut,
    summary="Adjust stock at one location",
    responses=error_responses(400, 401, 404, 409, 422, 500),
)
def adjust(
    payload: StockAdjustIn,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    entry = adjust_stock(
        db,
        tenant_id=tenant.tenant_id,
        product_id=payload.product_id,
        location_id=payload.location_id,
        quantity_change=payload.quantity_change,
        reserved_change=payload.reserved_change,
        reason=payload.reason,
        unlimited_override=payload.is_unlimited,
        movement_type=payload.movement_type,
        reference_id=payload.reference_id,
        performed_by=tenant.actor_id,
        metadata=payload.metadata,
    )
    return _entry_out(entry)


@router.post(
    "/adjust/bulk",
    response_model=StockBulkAdjustOut,
    summary="Apply many stock adjustments",
    responses=error_responses(400, 401, 422, 500),
)
def adjust_bulk(
    payload: StockBulkAdjustIn,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    results = adjust_many(
        db,
        tenant_id=tenant.tenant_id,
        items=[
            AdjustmentRequest(
                product_id=item.product_id,
                location_id=item.location_id,
                quantity_change=item.quantity_change,
                reserved_change=item.reserved_change,
                reason=item.reason,
                reference_id=item.reference_id,
                movement_type=item.movement_type,
                unlimited_override=item.is_unlimited,
                metadata=item.metadata,
            )
            for item in payload.items
        ],
        performed_by=tenant.actor_id,
    )
    items = [
        StockBulkItemOut(
            index=result.index,
            ok=result.ok,
            entry=_entry_out(result.entry) if result.entry is not None else None,
            error_code=result.error.code if result.error else None,
            error_message=result.error.message if result.error else None,
            error_details=(result.error.details() or None) if result.error else None,
        )
        for result in results
    ]
    succeeded = sum(1 for item in items if item.ok)
    return StockBulkAdjustOut(succeeded=succeeded, failed=len(items) - succeeded, items=items)


@router.post(
    "/set",
    response_model=StockEntryOut,
    summary="Set absolute stock levels",
    responses=error_responses(400, 401, 404, 409, 422, 500),
)
def set_levels(
    payload: StockSetLevelsIn,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    entry = set_stock_levels(
        db,
        tenant_id=tenant.tenant_id,
        product_id=payload.product_id,
        location_id=payload.location_id,
        quantity=payload.quantity,
        reserved=payload.reserved,
        reason=payload.reason,
        reference_id=payload.reference_id,
        performed_by=tenant.actor_id,
    )
    return _entry_out(entry)


@router.post(
    "/unlimited",
    response_model=StockEntryOut,
    summary="Toggle unlimited stock",
    responses=error_responses(400, 401, 404, 409, 422, 500),
)
def toggle_unlimited(
    payload: StockUnlimitedIn,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    entry = set_unlimited(
        db,
        tenant_id=tenant.tenant_id,
        product_id=payload.product_id,
        location_id=payload.location_id,
        is_unlimited=payload.is_unlimited,
        performed_by=tenant.actor_id,
    )
    return _entry_out(entry)


@router.post(
    "/transfers",
    response_model=StockTransferOut,
    summary="Transfer stock between locations",
    responses=error_responses(400, 401, 404, 409, 422, 500),
)
def transfer(
    payload: StockTransferIn,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    result = transfer_stock(
        db,
        tenant_id=tenant.tenant_id,
        product_id=payload.product_id,
        from_location_id=payload.from_location_id,
        to_location_id=payload.to_location_id,
        quantity=payload.quantity,
        reason=payload.reason,
        reference_id=payload.reference_id,
        performed_by=tenant.actor_id,
    )
    return StockTransferOut(
        transfer_id=result.transfer_id,
        source=_entry_out(result.source),
        destination=_entry_out(result.destination),
        movements=[_movement_out(movement) for movement in result.movements],
    )


@router.get(
    "/entries/{product_id}/{location_id}",
    response_model=StockEntryOut,
    summary="Get one stock entry",
    responses=error_responses(401, 404, 500),
)
def read_entry(
    product_id: str,
    location_id: str,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    entry = get_entry(db, tenant_id=tenant.tenant_id, product_id=product_id, location_id=location_id)
    return _entry_out(entry)


@router.get(
    "/products",
    response_model=ProductWithStockListOut,
    summary="List products with per-location stock",
    responses=error_responses(401, 500),
)
def read_all_with_stock(
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    rows = get_all_with_stock(db, tenant_id=tenant.tenant_id)
    return ProductWithStockListOut(
        items=[
            ProductWithStockOut(
                id=row.product.id,
                name=row.product.name,
                product_code=row.product.product_code,
                track_stock=row.product.track_stock,
                is_active=row.product.is_active,
                stocks=[_located_entry_out(item) for item in row.entries],
            )
            for row in rows
        ]
    )


@router.get(
    "/products/{product_id}",
    response_model=ProductStockOut,
    summary="Get product stock across locations",
    responses=error_responses(401, 500),
)
def read_product_stock(
    product_id: str,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    summary = get_product_stock(db, tenant_id=tenant.tenant_id, product_id=product_id)
    return ProductStockOut(
        product_id=summary.product_id,
        quantity=summary.quantity,
        reserved=summary.reserved,
        available=summary.available,
        has_unlimited=summary.has_unlimited,
        entries=[_located_entry_out(item) for item in summary.entries],
    )


@router.get(
    "/movements",
    response_model=StockMovementListOut,
    summary="List stock movements",
    responses=error_responses(400, 401, 422, 500),
)
def read_movements(
    product_id: str | None = Query(default=None),
    location_id: str | None = Query(default=None),
    movement_type: MovementType | None = Query(default=None),
    reference_id: str | None = Query(default=None),
    before_id: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    records = list_movements(
        db,
        tenant_id=tenant.tenant_id,
        filters=MovementFilter(
            product_id=product_id,
            location_id=location_id,
            movement_type=movement_type,
            reference_id=reference_id,
            before_id=before_id,
            limit=limit,
        ),
    )
    items = [_movement_out(record.movement, record) for record in records]
    effective_limit = resolve_limit(limit)
    has_next = len(items) == effective_limit
    return StockMovementListOut(
        items=items,
        cursor=CursorMeta(
            limit=effective_limit,
            count=len(items),
            next_before_id=items[-1].id if has_next else None,
            has_next=has_next,
        ),
    )


@router.get(
    "/movements/replay/{product_id}/{location_id}",
    response_model=LedgerReplayOut,
    summary="Replay the movement ledger for one entry",
    responses=error_responses(401, 500),
)
def replay(
    product_id: str,
    location_id: str,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    result = replay_entry(db, tenant_id=tenant.tenant_id, product_id=product_id, location_id=location_id)
    return LedgerReplayOut(
        product_id=product_id,
        location_id=location_id,
        movements=result.movements,
        replayed_quantity=result.quantity,
        replayed_reserved=result.reserved,
        entry_quantity=result.entry_quantity,
        entry_reserved=result.entry_reserved,
        consistent=result.consistent,
    )
