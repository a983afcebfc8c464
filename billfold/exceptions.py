class BillfoldError(Exception):
    """Base exception for all Billfold errors."""

    status_code = 500

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors


class ValidationError(BillfoldError):
    """Input rejected before anything was persisted."""

    status_code = 400


class NotFoundError(BillfoldError):
    """Resource does not exist or belongs to another user."""

    status_code = 404


class ConflictError(BillfoldError):
    """Write collides with an existing resource."""

    status_code = 409


class InvalidAccountTypeError(BillfoldError):
    """Operation needs a credit card account."""

    status_code = 400


class ImportStateError(BillfoldError):
    """Import record is not in the status the step requires."""

    status_code = 400


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""
