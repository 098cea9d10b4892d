"""
Service container and request dependencies
"""

from typing import Optional

from fastapi import HTTPException

from ..config import ServicingConfig, get_config
from ..currency import Currency
from ..storage import StorageInterface, create_storage
from ..async_storage import LedgerStore
from ..borrowers import BorrowerManager
from ..installments import InstallmentManager
from ..loans import LoanManager
from ..repayments import RepaymentLedger
from ..matching import PaymentMatcher
from ..allocation import AllocationEngine
from ..notifications import PaymentNotifier, SMSProvider, create_sms_provider
from ..callbacks import PaymentCallbackProcessor
from ..exceptions import (
    ServicingError, ValidationError, LoanNotFoundError, BorrowerNotFoundError,
    InvalidLoanStateError, DuplicateTransactionError, TransactionRetryExhaustedError
)


class ServicingSystem:
    """Loan servicing system with all components initialized"""

    def __init__(
        self,
        storage: StorageInterface,
        sms_provider: SMSProvider,
        config: Optional[ServicingConfig] = None
    ):
        config = config or get_config()
        self.config = config
        self.storage = storage
        self.store = LedgerStore(storage, max_attempts=config.transaction_max_attempts)
        currency = Currency[config.currency]

        self.borrower_manager = BorrowerManager(self.store)
        self.installment_manager = InstallmentManager(self.store)
        self.loan_manager = LoanManager(self.store, self.installment_manager, currency=currency)
        self.repayment_ledger = RepaymentLedger(self.store)
        self.matcher = PaymentMatcher(self.loan_manager, self.borrower_manager)
        self.allocation_engine = AllocationEngine(
            self.store, self.loan_manager, self.installment_manager, self.repayment_ledger
        )
        self.sms_provider = sms_provider
        self.notifier = PaymentNotifier(sms_provider, enabled=config.sms_enabled)
        self.callback_processor = PaymentCallbackProcessor(
            self.store, self.repayment_ledger, self.matcher, self.allocation_engine,
            self.notifier, collector_id=config.collector_id
        )

    @classmethod
    def from_config(cls, config: Optional[ServicingConfig] = None) -> "ServicingSystem":
        """Build the system from storage and SMS settings"""
        config = config or get_config()
        return cls(
            storage=create_storage(config.database_url),
            sms_provider=create_sms_provider(config),
            config=config
        )

    async def close(self) -> None:
        await self.sms_provider.close()
        await self.store.close()


_system: Optional[ServicingSystem] = None


def get_system() -> ServicingSystem:
    """Dependency returning the process-wide servicing system"""
    global _system
    if _system is None:
        _system = ServicingSystem.from_config()
    return _system


async def close_system() -> None:
    """Release the process-wide servicing system, if one was built"""
    global _system
    if _system is not None:
        await _system.close()
        _system = None


def to_http_exception(error: ServicingError) -> HTTPException:
    """Map a domain error onto the HTTP status staff clients expect"""
    if isinstance(error, (LoanNotFoundError, BorrowerNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidLoanStateError, DuplicateTransactionError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, TransactionRetryExhaustedError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
