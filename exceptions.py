from typing import Optional


class VendingError(Exception):
    """Base class for errors raised by the vending machine core."""

    error_code = "VENDING_ERROR"
    default_detail = "Vending machine error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthorized(VendingError):
    """Caller identity is missing, unknown, or lacks the required role or ownership."""

    error_code = "UNAUTHORIZED"
    default_detail = "Unauthorized"


class NotFound(VendingError):
    """Account or product id does not exist."""

    error_code = "NOT_FOUND"
    default_detail = "Not found"


class AlreadyExists(VendingError):
    error_code = "ALREADY_EXISTS"
    default_detail = "Already exists"


class InvalidAmount(VendingError):
    """Amount is not an accepted denomination, or a quantity is not positive."""

    error_code = "INVALID_AMOUNT"
    default_detail = "Invalid amount"


class InsufficientStock(VendingError):
    error_code = "INSUFFICIENT_STOCK"
    default_detail = "Insufficient product quantity"


class InsufficientFunds(VendingError):
    error_code = "INSUFFICIENT_FUNDS"
    default_detail = "Insufficient funds"


class ChangeUnrepresentable(VendingError):
    """Change cannot be paid out exactly with the configured denominations.

    Valid balances are always sums of accepted denominations, so this signals
    an internal inconsistency rather than a user error.
    """

    error_code = "CHANGE_UNREPRESENTABLE"
    default_detail = "Unable to make change"

    def __init__(self, amount: int, remainder: int):
        self.amount = amount
        self.remainder = remainder
        super().__init__(f"Unable to make change for {amount} (remainder {remainder})")
