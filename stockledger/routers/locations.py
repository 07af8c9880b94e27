from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from stockledger.core.api_docs import error_responses
from stockledger.core.deps import get_db
from stockledger.core.tenant_context import TenantContext, get_tenant_context
from stockledger.models.location import StockLocation
from stockledger.schemas.location import LocationCreateIn, LocationListOut, LocationOut, LocationUpdateIn
from stockledger.services import location_service

router = APIRouter(prefix="/locations", tags=["locations"])


def _location_out(location: StockLocation, *, entry_count: int) -> LocationOut:
    return LocationOut(
        id=location.id,
        name=location.name,
        type=location.type,
        description=location.description,
        address=location.address,
        is_default=location.is_default,
        is_active=location.is_active,
        entry_count=entry_count,
        created_at=location.created_at,
        updated_at=location.updated_at,
    )


def _location_with_count_out(db: Session, *, tenant_id: str, location: StockLocation) -> LocationOut:
    count = location_service.count_location_entries(db, tenant_id=tenant_id, location_id=location.id)
    return _location_out(location, entry_count=count)


@router.post(
    "",
    response_model=LocationOut,
    status_code=201,
    summary="Create stock location",
    responses=error_responses(400, 401, 422, 500),
)
def create_location(
    payload: LocationCreateIn,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    location = location_service.create_location(
        db,
        tenant_id=tenant.tenant_id,
        name=payload.name,
        location_type=payload.type,
        description=payload.description,
        address=payload.address,
        is_default=payload.is_default,
        actor_id=tenant.actor_id,
    )
    return _location_out(location, entry_count=0)


@router.get(
    "",
    response_model=LocationListOut,
    summary="List stock locations",
    responses=error_responses(401, 422, 500),
)
def list_locations(
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    rows = location_service.list_locations(
        db,
        tenant_id=tenant.tenant_id,
        include_inactive=include_inactive,
    )
    return LocationListOut(items=[_location_out(row.location, entry_count=row.entry_count) for row in rows])


@router.get(
    "/{location_id}",
    response_model=LocationOut,
    summary="Get stock location",
    responses=error_responses(401, 404, 500),
)
def get_location(
    location_id: str,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    location = location_service.get_location(db, tenant_id=tenant.tenant_id, location_id=location_id)
    return _location_with_count_out(db, tenant_id=tenant.tenant_id, location=location)


@router.patch(
    "/{location_id}",
    response_model=LocationOut,
    summary="Update stock location",
    responses=error_responses(400, 401, 404, 422, 500),
)
def update_location(
    location_id: str,
    payload: LocationUpdateIn,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    location = location_service.update_location(
        db,
        tenant_id=tenant.tenant_id,
        location_id=location_id,
        actor_id=tenant.actor_id,
        **payload.model_dump(exclude_unset=True),
    )
    return _location_with_count_out(db, tenant_id=tenant.tenant_id, location=location)


@router.delete(
    "/{location_id}",
    status_code=204,
    summary="Delete stock location",
    responses=error_responses(401, 404, 409, 500),
)
def delete_location(
    location_id: str,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant_context),
):
    location_service.delete_location(
        db,
        tenant_id=tenant.tenant_id,
        location_id=location_id,
        actor_id=tenant.actor_id,
    )
    return Response(status_code=204)
