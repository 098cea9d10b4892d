"""Exception hierarchy for loan servicing."""


class ServicingError(Exception):
    """Base exception for all loan servicing errors."""


class ValidationError(ServicingError):
    """Raised when input data fails validation."""


class LoanNotFoundError(ServicingError):
    """Raised when a referenced loan does not exist."""


class BorrowerNotFoundError(ServicingError):
    """Raised when a referenced borrower does not exist."""


class InvalidLoanStateError(ServicingError):
    """Raised when a loan is in the wrong lifecycle state for the operation."""


class ScheduleAlreadyExistsError(InvalidLoanStateError):
    """Raised when installments already exist for a loan being disbursed."""


class TransactionConflictError(ServicingError):
    """Raised at commit when a document read by the transaction has changed."""


class TransactionRetryExhaustedError(ServicingError):
    """Raised when a transaction keeps conflicting past its attempt budget."""


class DuplicateTransactionError(ServicingError):
    """Raised when a payment transaction id has already been applied."""

    def __init__(self, trans_id: str):
        super().__init__(f"Transaction {trans_id} has already been processed")
        self.trans_id = trans_id


class NotificationError(ServicingError):
    """Raised when an outbound notification cannot be delivered."""
