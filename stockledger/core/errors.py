from typing import Any


class StockLedgerError(Exception):
    """
    Base class for every rejection raised by the stock ledger services.

    Carries enough context (key, requested delta, observed state) for a caller
    to explain the rejection without re-reading the entry.
    """

    code = "stock_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        key: Any = None,
        requested: dict[str, Any] | None = None,
        current: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.key = key
        self.requested = requested
        self.current = current

    def details(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.key is not None:
            payload["key"] = self.key._asdict() if hasattr(self.key, "_asdict") else self.key
        if self.requested is not None:
            payload["requested"] = self.requested
        if self.current is not None:
            payload["current"] = self.current
        return payload


class ValidationError(StockLedgerError):
    code = "stock_validation_error"
    status_code = 400


class InsufficientStockError(StockLedgerError):
    code = "insufficient_stock"
    status_code = 409


class LocationNotFoundError(StockLedgerError):
    code = "location_not_found"
    status_code = 404

    def __init__(self, location_id: str, **kwargs: Any):
        super().__init__(f"Stock location {location_id} not found", **kwargs)
        self.location_id = location_id

    def details(self) -> dict[str, Any]:
        payload = super().details()
        payload["location_id"] = self.location_id
        return payload


class LocationInactiveError(StockLedgerError):
    code = "location_inactive"
    status_code = 422

    def __init__(self, location_id: str, **kwargs: Any):
        super().__init__(f"Stock location {location_id} is inactive", **kwargs)
        self.location_id = location_id

    def details(self) -> dict[str, Any]:
        payload = super().details()
        payload["location_id"] = self.location_id
        return payload


class LocationInUseError(StockLedgerError):
    code = "location_in_use"
    status_code = 409

    def __init__(self, location_id: str, *, blocking_entries: list[dict[str, Any]]):
        super().__init__(f"Stock location {location_id} still holds stock")
        self.location_id = location_id
        self.blocking_entries = blocking_entries

    def details(self) -> dict[str, Any]:
        return {"location_id": self.location_id, "blocking_entries": self.blocking_entries}


class ConflictError(StockLedgerError):
    code = "stock_conflict"
    status_code = 409


class PartialFailureError(StockLedgerError):
    """
    Transfer debit committed but the credit failed.

    `original` is the exception raised by the credit step. `compensation` is the
    movement that re-credited the source, or None when compensation also failed.
    """

    code = "transfer_partial_failure"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        transfer_id: str,
        original: BaseException,
        compensation: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.transfer_id = transfer_id
        self.original = original
        self.compensation = compensation

    def details(self) -> dict[str, Any]:
        payload = super().details()
        payload["transfer_id"] = self.transfer_id
        payload["original_error"] = {
            "type": type(self.original).__name__,
            "message": str(self.original),
        }
        if isinstance(self.original, StockLedgerError):
            payload["original_error"]["code"] = self.original.code
        payload["compensated"] = self.compensation is not None
        if self.compensation is not None:
            payload["compensation_movement_id"] = self.compensation.id
        return payload
