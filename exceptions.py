class LedgerError(Exception):
    """Base ledger error carrying a machine-readable code."""

    code = "LEDGER_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidAccountError(LedgerError):
    code = "INVALID_ACCOUNT"

    def __init__(self, message: str = "Account identifier must be a non-empty string"):
        super().__init__(message)


class InvalidChargeError(LedgerError):
    code = "INVALID_CHARGE"

    def __init__(self, message: str = "Charge amount must be a non-negative integer"):
        super().__init__(message)


class StoreUnavailableError(LedgerError):
    """The ledger store could not execute the request (connection, timeout, server fault)."""

    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str = "Ledger store unavailable"):
        super().__init__(message)
