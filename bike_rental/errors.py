"""
Failure taxonomy for rental operations.

Every engine operation either returns its result or raises exactly one of
these. ``code`` is a stable identifier callers can switch on.
"""


class RentalError(Exception):
    """Base class for all named rental failures"""
    code = "rental_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(RentalError):
    """A customer, bike or rental does not exist"""
    code = "not_found"


class CustomerNotFound(NotFound):
    code = "customer_not_found"


class BikeNotFound(NotFound):
    code = "bike_not_found"


class RentalNotFound(NotFound):
    code = "rental_not_found"


class BikeNotAvailable(RentalError):
    """The bike does not exist or is not AVAILABLE for rent"""
    code = "bike_not_available"


class InvalidBikeState(RentalError):
    """An illegal bike status transition was attempted"""
    code = "invalid_bike_state"


class DuplicateBikeId(RentalError):
    code = "duplicate_bike_id"


class InvalidInput(RentalError, ValueError):
    """Blank name, negative rate, non-positive duration and similar"""
    code = "invalid_input"


class AlreadyFinalized(RentalError):
    """Checkout retried on a rental that is already closed"""
    code = "already_finalized"


class StorageError(RentalError):
    """A persistence backend failed to read or write"""
    code = "storage_error"
