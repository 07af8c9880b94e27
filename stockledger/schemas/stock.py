from datetime import datetime
from typing import Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from stockledger.schemas.common import CursorMeta
from stockledger.schemas.location import LocationType

MovementType = Literal[
    "ADJUSTMENT",
    "TRANSFER_OUT",
    "TRANSFER_IN",
    "RESERVATION",
    "RELEASE",
    "SALE",
    "RETURN",
]
AdjustmentMovementType = Literal["ADJUSTMENT", "RESERVATION", "RELEASE", "SALE", "RETURN"]
MetadataValue = Union[str, int, float, bool, None]


class StockAdjustIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=36, validation_alias=AliasChoices("product_id", "productId"))
    location_id: str = Field(min_length=1, max_length=36, validation_alias=AliasChoices("location_id", "locationId"))
    quantity_change: int = Field(default=0, validation_alias=AliasChoices("quantity_change", "quantityChange"))
    reserved_change: int = Field(default=0, validation_alias=AliasChoices("reserved_change", "reservedChange"))
    reason: str | None = Field(default=None, max_length=255)
    reference_id: str | None = Field(
        default=None,
        max_length=64,
        validation_alias=AliasChoices("reference_id", "referenceId"),
    )
    movement_type: AdjustmentMovementType = Field(
        default="ADJUSTMENT",
        validation_alias=AliasChoices("movement_type", "type"),
    )
    is_unlimited: bool | None = Field(default=None, validation_alias=AliasChoices("is_unlimited", "isUnlimited"))
    metadata: dict[str, MetadataValue] | None = None

    @model_validator(mode="after")
    def validate_non_zero_delta(self) -> "StockAdjustIn":
        if self.quantity_change == 0 and self.reserved_change == 0:
            raise ValueError("quantity_change or reserved_change must be non-zero")
        return self

    model_config = ConfigDict(populate_by_name=True)


class StockBulkAdjustIn(BaseModel):
    items: list[StockAdjustIn] = Field(min_length=1)


class StockSetLevelsIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=36, validation_alias=AliasChoices("product_id", "productId"))
    location_id: str = Field(min_length=1, max_length=36, validation_alias=AliasChoices("location_id", "locationId"))
    quantity: int | None = None
    reserved: int | None = Field(default=None, ge=0)
    reason: str | None = Field(default=None, max_length=255)
    reference_id: str | None = Field(
        default=None,
        max_length=64,
        validation_alias=AliasChoices("reference_id", "referenceId"),
    )

    @model_validator(mode="after")
    def validate_any_target(self) -> "StockSetLevelsIn":
        if self.quantity is None and self.reserved is None:
            raise ValueError("quantity or reserved must be provided")
        return self

    model_config = ConfigDict(populate_by_name=True)


class StockUnlimitedIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=36, validation_alias=AliasChoices("product_id", "productId"))
    location_id: str = Field(min_length=1, max_length=36, validation_alias=AliasChoices("location_id", "locationId"))
    is_unlimited: bool = Field(validation_alias=AliasChoices("is_unlimited", "isUnlimited"))

    model_config = ConfigDict(populate_by_name=True)


class StockTransferIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=36, validation_alias=AliasChoices("product_id", "productId"))
    from_location_id: str = Field(
        min_length=1,
        max_length=36,
        validation_alias=AliasChoices("from_location_id", "fromLocationId"),
    )
    to_location_id: str = Field(
        min_length=1,
        max_length=36,
        validation_alias=AliasChoices("to_location_id", "toLocationId"),
    )
    quantity: int = Field(gt=0)
    reason: str | None = Field(default=None, max_length=255)
    reference_id: str | None = Field(
        default=None,
        max_length=64,
        validation_alias=AliasChoices("reference_id", "referenceId"),
    )

    @field_validator("to_location_id")
    @classmethod
    def validate_distinct_locations(cls, value: str, info) -> str:
        if value == info.data.get("from_location_id"):
            raise ValueError("Source and destination locations must be different")
        return value

    model_config = ConfigDict(populate_by_name=True)


class StockLocationRefOut(BaseModel):
    id: str
    name: str
    type: LocationType
    is_default: bool
    is_active: bool


class StockEntryOut(BaseModel):
    id: str | None
    product_id: str
    location_id: str
    quantity: int | None
    reserved: int
    available: int | None
    is_unlimited: bool
    ledger_quantity: int
    version: int
    location: StockLocationRefOut | None = None


class StockMovementOut(BaseModel):
    id: str
    product_id: str
    product_name: str | None = None
    product_code: str | None = None
    location_id: str
    location_name: str | None = None
    from_location_id: str | None = None
    from_location_name: str | None = None
    to_location_id: str | None = None
    to_location_name: str | None = None
    type: MovementType
    quantity_change: int
    reserved_change: int
    quantity_before: int
    quantity_after: int
    reserved_before: int
    reserved_after: int
    entry_version: int
    is_compensation: bool
    reason: str | None = None
    reference_id: str | None = None
    performed_by: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime


class StockMovementListOut(BaseModel):
    items: list[StockMovementOut]
    cursor: CursorMeta


class StockTransferOut(BaseModel):
    transfer_id: str
    source: StockEntryOut
    destination: StockEntryOut
    movements: list[StockMovementOut]


class StockBulkItemOut(BaseModel):
    index: int
    ok: bool
    entry: StockEntryOut | None = None
    error_code: str | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None


class StockBulkAdjustOut(BaseModel):
    succeeded: int
    failed: int
    items: list[StockBulkItemOut]


class ProductStockOut(BaseModel):
    product_id: str
    quantity: int
    reserved: int
    available: int
    has_unlimited: bool
    entries: list[StockEntryOut]


class ProductWithStockOut(BaseModel):
    id: str
    name: str
    product_code: str | None = None
    track_stock: bool
    is_active: bool
    stocks: list[StockEntryOut]


class ProductWithStockListOut(BaseModel):
    items: list[ProductWithStockOut]


class LedgerReplayOut(BaseModel):
    product_id: str
    location_id: str
    movements: int
    replayed_quantity: int
    replayed_reserved: int
    entry_quantity: int
    entry_reserved: int
    consistent: bool
