from typing import Any

from pydantic import BaseModel, ConfigDict


class CursorMeta(BaseModel):
    limit: int
    count: int
    next_before_id: str | None = None
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "limit": 100,
                "count": 100,
                "next_before_id": "6c1d3d56-90b8-4f0e-9a45-0c8e8e3c7a51",
                "has_next": True,
            }
        }
    )


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    details: list[ValidationIssueOut] | dict[str, Any] | None = None


class ErrorOut(BaseModel):
    error: ErrorDetailOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "insufficient_stock",
                    "message": "Adjustment would leave quantity at -5",
                    "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                    "path": "/stock/adjust",
                    "details": {
                        "key": {"tenant_id": "t1", "product_id": "p1", "location_id": "l1"},
                        "requested": {"quantity_change": -45, "reserved_change": 0},
                        "current": {"quantity": 40, "reserved": 10, "available": 30},
                    },
                }
            }
        }
    )
