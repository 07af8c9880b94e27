from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.core.key_locks import StockKey
from stockledger.db.base import Base

MOVEMENT_TYPES = (
    "ADJUSTMENT",
    "TRANSFER_OUT",
    "TRANSFER_IN",
    "RESERVATION",
    "RELEASE",
    "SALE",
    "RETURN",
)
TRANSFER_MOVEMENT_TYPES = ("TRANSFER_OUT", "TRANSFER_IN")


class StockEntry(Base):
    """
    Current quantity and reservation for one (tenant, product, location).

    `version` is bumped by the ORM on every flush and checked in the UPDATE's
    WHERE clause, so two writers that read the same base state cannot both commit.
    """
    __tablename__ = "stock_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    location_id: Mapped[str] = mapped_column(String(36), ForeignKey("stock_locations.id"), nullable=False, index=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_unlimited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("tenant_id", "product_id", "location_id", name="uq_stock_entries_tenant_product_location"),
        Index("ix_stock_entries_tenant_location", "tenant_id", "location_id"),
    )

    @property
    def key(self) -> StockKey:
        return StockKey(self.tenant_id, self.product_id, self.location_id)

    @property
    def available(self) -> int:
        return max(0, (self.quantity or 0) - (self.reserved or 0))

    @property
    def reported_quantity(self) -> int | None:
        # Unlimited entries may run a negative ledger balance; report them as unbounded.
        return None if self.is_unlimited else self.quantity

    @property
    def reported_available(self) -> int | None:
        return None if self.is_unlimited else self.available

    def snapshot(self) -> dict[str, Any]:
        return {
            "quantity": self.quantity,
            "reserved": self.reserved,
            "available": self.available,
            "is_unlimited": bool(self.is_unlimited),
            "version": self.version,
        }


class StockMovement(Base):
    """
    One committed change to a stock entry. Rows are written once and never updated
    or deleted; `entry_version` is the entry version this commit produced, which
    totally orders the movements of a key.
    """
    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # No FK: movements outlive the location they refer to.
    location_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    from_location_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    to_location_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    movement_type: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity_change: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_change: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    quantity_before: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_before: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_after: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_version: Mapped[int] = mapped_column(Integer, nullable=False)
    is_compensation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")

    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    performed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "product_id",
            "location_id",
            "entry_version",
            name="uq_stock_movements_key_entry_version",
        ),
        Index("ix_stock_movements_tenant_created_at", "tenant_id", "created_at"),
        Index(
            "ix_stock_movements_tenant_product_location_created_at",
            "tenant_id",
            "product_id",
            "location_id",
            "created_at",
        ),
    )

    @property
    def key(self) -> StockKey:
        return StockKey(self.tenant_id, self.product_id, self.location_id)


class ImmutableMovementError(RuntimeError):
    pass


@event.listens_for(StockMovement, "before_update")
def _refuse_movement_update(mapper, connection, target):
    raise ImmutableMovementError(f"Stock movement {target.id} is immutable")


@event.listens_for(StockMovement, "before_delete")
def _refuse_movement_delete(mapper, connection, target):
    raise ImmutableMovementError(f"Stock movement {target.id} cannot be deleted")
