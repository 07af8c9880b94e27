from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

LocationType = Literal["PHYSICAL", "DIGITAL"]


class LocationCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    type: LocationType = "PHYSICAL"
    description: str | None = Field(default=None, max_length=255)
    address: str | None = Field(default=None, max_length=255)
    is_default: bool = Field(default=False, validation_alias=AliasChoices("is_default", "isDefault"))

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name cannot be empty")
        return cleaned

    model_config = ConfigDict(populate_by_name=True)


class LocationUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    type: LocationType | None = None
    description: str | None = Field(default=None, max_length=255)
    address: str | None = Field(default=None, max_length=255)
    is_default: bool | None = Field(default=None, validation_alias=AliasChoices("is_default", "isDefault"))
    is_active: bool | None = Field(default=None, validation_alias=AliasChoices("is_active", "isActive"))

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name cannot be empty")
        return cleaned

    @model_validator(mode="after")
    def validate_any_field_present(self) -> "LocationUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self

    model_config = ConfigDict(populate_by_name=True)


class LocationOut(BaseModel):
    id: str
    name: str
    type: LocationType
    description: str | None = None
    address: str | None = None
    is_default: bool
    is_active: bool
    entry_count: int
    created_at: datetime
    updated_at: datetime


class LocationListOut(BaseModel):
    items: list[LocationOut]
