"""Business-rule failures raised inside the lending core.

They never escape a core operation: the transaction manager turns them into
a failed ``LendingResult``. Storage faults (``sqlite3.Error``) are not part of
this hierarchy and propagate to the caller.
"""


class LendingError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class LendingValidationError(LendingError):
    """Missing or malformed input; rejected before any mutation."""
    kind = "validation"


class LendingConflictError(LendingError):
    """The request is well-formed but the ledger state forbids it."""
    kind = "conflict"


class LendingConsistencyError(LendingError):
    """One of the two writes of a borrow/return failed; the transaction was rolled back."""
    kind = "consistency"
    status_code = 500
