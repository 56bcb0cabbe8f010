class LedgerError(ValueError):
    """Base class for every classified failure raised by the ledger services."""


class ValidationError(LedgerError):
    """Malformed or out-of-range input (non-positive amounts, missing fields)."""


class NotFound(LedgerError):
    """A referenced account, category, transaction or schedule does not exist."""


class InvalidReference(LedgerError):
    """The request references entities that are inconsistent with each other."""


class AlreadyPaid(LedgerError):
    pass


class AlreadyProcessed(LedgerError):
    pass


class InsufficientQuantity(LedgerError):
    pass


class ExternalServiceError(LedgerError):
    """A price lookup failed. Never leaves ledger state modified."""
