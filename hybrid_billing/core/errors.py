"""
Error types raised by the consumption engine.

An insufficient-funds plan is not an error; it is reported as an
unsuccessful ExecutionResult.
"""


class ConsumptionError(Exception):
    """Base class for consumption engine errors."""
    retryable = False


class ProfileNotFound(ConsumptionError, LookupError):
    """Raised when a user has no profile. Callers must provision one first."""

    def __init__(self, user_id: str):
        super().__init__(f"User profile not found: {user_id}")
        self.user_id = user_id


class ConcurrentBalanceConflict(ConsumptionError):
    """Raised when a conditional decrement affects zero rows.

    The balance changed between planning and execution. The whole
    transaction has been rolled back; the caller may re-plan and retry.
    """
    retryable = True

    def __init__(self, balance_id: str, balance_type: str, requested: int):
        super().__init__(
            f"Insufficient balance in {balance_type} account {balance_id} "
            f"(requested {requested}); balance changed since planning"
        )
        self.balance_id = balance_id
        self.balance_type = balance_type
        self.requested = requested


class StorageFailure(ConsumptionError):
    """Raised when the datastore fails during a consumption transaction."""
