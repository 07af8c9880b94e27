import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from stockledger.core.errors import PartialFailureError, ValidationError
from stockledger.core.key_locks import StockKey, stock_key_locks
from stockledger.core.observability import log_ledger_event
from stockledger.models.stock import StockEntry, StockMovement
from stockledger.services.adjustment_service import AdjustmentOutcome, apply_adjustment
from stockledger.services.location_service import require_active_location


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    source: StockEntry
    destination: StockEntry
    movements: tuple[StockMovement, StockMovement]


def _validate_transfer(
    *,
    source_key: StockKey,
    from_location_id: str,
    to_location_id: str,
    quantity: Any,
) -> int:
    requested = {"quantity": quantity}
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Transfer quantity must be an integer", key=source_key, requested=requested)
    if quantity <= 0:
        raise ValidationError("Transfer quantity must be positive", key=source_key, requested=requested)
    if from_location_id == to_location_id:
        raise ValidationError(
            "Source and destination locations must be different",
            key=source_key,
            requested=requested,
        )
    return quantity


def _compensate(
    db: Session,
    *,
    source_key: StockKey,
    to_location_id: str,
    quantity: int,
    transfer_id: str,
    debit: AdjustmentOutcome,
    failure: BaseException,
    performed_by: str | None,
) -> StockMovement | None:
    try:
        outcome = apply_adjustment(
            db,
            key=source_key,
            resolve=lambda _entry: (quantity, 0),
            movement_type="TRANSFER_IN",
            reason=f"Compensation for failed transfer {transfer_id}",
            reference_id=transfer_id,
            performed_by=performed_by,
            metadata={"compensates": debit.movement.id, "failure": type(failure).__name__},
            from_location_id=to_location_id,
            to_location_id=source_key.location_id,
            is_compensation=True,
            allow_inactive_location=True,
            requested={"quantity_change": quantity, "reserved_change": 0},
        )
    except Exception as exc:
        log_ledger_event(
            "stock.transfer.compensation_failed",
            level=logging.ERROR,
            transfer_id=transfer_id,
            key=source_key._asdict(),
            quantity=quantity,
            debit_movement_id=debit.movement.id,
            original_error=str(failure),
            compensation_error=str(exc),
        )
        return None
    return outcome.movement


def transfer_stock(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    from_location_id: str,
    to_location_id: str,
    quantity: int,
    reason: str | None = None,
    reference_id: str | None = None,
    performed_by: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> TransferResult:
    """
    Move `quantity` of a product between two locations.

    Runs as a saga over two committed adjustments: TRANSFER_OUT at the source,
    then TRANSFER_IN at the destination. Both keys stay locked for the whole
    saga. If the credit fails after the debit committed, the source is
    re-credited by a compensation movement and PartialFailureError is raised.
    """
    source_key = StockKey(tenant_id, product_id, from_location_id)
    destination_key = StockKey(tenant_id, product_id, to_location_id)
    quantity = _validate_transfer(
        source_key=source_key,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        quantity=quantity,
    )
    transfer_id = reference_id or str(uuid.uuid4())
    requested = {"quantity": quantity}

    with stock_key_locks.hold(source_key, destination_key, requested=requested):
        # Fail fast on a bad destination before anything is debited.
        require_active_location(
            db,
            tenant_id=tenant_id,
            location_id=to_location_id,
            key=destination_key,
            requested=requested,
        )

        debit = apply_adjustment(
            db,
            key=source_key,
            resolve=lambda _entry: (-quantity, 0),
            movement_type="TRANSFER_OUT",
            reason=reason,
            reference_id=transfer_id,
            performed_by=performed_by,
            metadata=metadata,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            require_available=quantity,
            requested={"quantity_change": -quantity, "reserved_change": 0},
        )

        try:
            credit = apply_adjustment(
                db,
                key=destination_key,
                resolve=lambda _entry: (quantity, 0),
                movement_type="TRANSFER_IN",
                reason=reason,
                reference_id=transfer_id,
                performed_by=performed_by,
                metadata=metadata,
                from_location_id=from_location_id,
                to_location_id=to_location_id,
                requested={"quantity_change": quantity, "reserved_change": 0},
            )
        except BaseException as exc:
            compensation = _compensate(
                db,
                source_key=source_key,
                to_location_id=to_location_id,
                quantity=quantity,
                transfer_id=transfer_id,
                debit=debit,
                failure=exc,
                performed_by=performed_by,
            )
            if not isinstance(exc, Exception):
                raise
            raise PartialFailureError(
                f"Transfer {transfer_id} credit failed after debit"
                + ("; source re-credited" if compensation is not None else "; compensation failed"),
                transfer_id=transfer_id,
                original=exc,
                compensation=compensation,
                key=destination_key,
                requested={"quantity_change": quantity, "reserved_change": 0},
            ) from exc

    log_ledger_event(
        "stock.transfer.committed",
        transfer_id=transfer_id,
        product_id=product_id,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        quantity=quantity,
    )
    return TransferResult(
        transfer_id=transfer_id,
        source=debit.entry,
        destination=credit.entry,
        movements=(debit.movement, credit.movement),
    )
