class LedgerError(Exception):
    """Base class for failures surfaced by the ledger services."""


class NotFound(LedgerError, ValueError):
    pass


class InvalidReference(LedgerError, ValueError):
    pass


class MalformedTimestamp(LedgerError, ValueError):
    pass


class StorageFailure(LedgerError, RuntimeError):
    pass
