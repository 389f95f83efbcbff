class BoxOfficeError(Exception):
    """Base class for every error the service raises on purpose.

    ``code`` is the stable machine-readable identifier sent to API clients,
    ``status_code`` the HTTP status the boundary layer maps it to, and
    ``retryable`` tells the caller whether repeating the request can succeed.
    """

    code = "boxoffice_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "") -> None:
        self.message = message or self.code
        super().__init__(self.message)


# ---- capacity / validation: returned to the buyer, never retried

class CapacityError(BoxOfficeError):
    status_code = 400


class OutOfStockError(CapacityError):
    code = "out_of_stock"
    status_code = 409

    def __init__(self, category_id: str, requested: int) -> None:
        self.category_id = category_id
        self.requested = requested
        super().__init__(
            f"not enough tickets left in {category_id} for {requested}"
        )


class QuantityExceedsLimitError(CapacityError):
    code = "quantity_exceeds_limit"

    def __init__(self, requested: int, limit: int) -> None:
        self.requested = requested
        self.limit = limit
        super().__init__(f"maximum {limit} tickets per order")


class InvalidQuantityError(CapacityError):
    code = "invalid_quantity"


class InsufficientInventoryError(BoxOfficeError):
    """Raised by the inventory store; the engine turns it into
    OutOfStockError."""
    code = "insufficient_inventory"
    status_code = 409

    def __init__(self, category_id: str, requested: int,
                 available: int) -> None:
        self.category_id = category_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"insufficient inventory for {category_id}: "
            f"requested {requested}, available {available}"
        )


# ---- lookups

class NotFoundError(BoxOfficeError):
    status_code = 404


class CategoryNotFoundError(NotFoundError):
    code = "category_not_found"


class OrderNotFoundError(NotFoundError):
    code = "order_not_found"


class CategoryExistsError(BoxOfficeError):
    code = "category_exists"
    status_code = 409


# ---- integrity / conflicts: money and inventory disagree, escalate

class ConflictError(BoxOfficeError):
    status_code = 409


class LateConfirmationConflict(ConflictError):
    code = "late_confirmation_conflict"

    def __init__(self, order_id: str, kind: str, message: str = "") -> None:
        self.order_id = order_id
        self.kind = kind
        super().__init__(message or f"{kind} on order {order_id}")


class IntegrityConflictError(ConflictError):
    code = "integrity_conflict"


# ---- transient infrastructure

class StoreUnavailableError(BoxOfficeError):
    code = "store_unavailable"
    status_code = 503
    retryable = True
