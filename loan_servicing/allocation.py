"""
Payment Allocation Module

Applies a payment to a loan inside one optimistic transaction: the amount
is spread across outstanding installments oldest-due first, the loan's
balance is recomputed from the installments themselves, and a repayment
ledger entry is written. On a write conflict the whole transaction is
re-run from fresh reads.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .currency import Money
from .async_storage import LedgerStore, Transaction
from .installments import (
    Installment, InstallmentManager, InstallmentStatus, OUTSTANDING_STATUSES
)
from .loans import LoanManager, LoanStatus
from .repayments import Repayment, RepaymentLedger, RepaymentMethod
from .exceptions import DuplicateTransactionError, LoanNotFoundError, ValidationError
from .logging_config import get_logger, log_action

logger = get_logger("loan_servicing.allocation")


@dataclass
class InstallmentAllocation:
    """How much of a payment went to one installment"""
    installment_id: str
    installment_number: int
    applied: Money
    paid_amount: Money                  # Installment's paid amount after this payment
    status: InstallmentStatus


@dataclass
class AllocationResult:
    """Outcome of applying one payment"""
    loan_id: str
    repayment_id: str
    status: LoanStatus
    balance_after_payment: Money
    allocations: List[InstallmentAllocation] = field(default_factory=list)
    unallocated: Optional[Money] = None  # Overpayment not absorbed by any installment


def allocate_payment(outstanding: List[Installment], amount: Money) -> Tuple[List[InstallmentAllocation], Money]:
    """
    Waterfall a payment over installments in the order given

    Each installment is settled in full before the next is touched; the
    first one the money does not cover becomes Partial and the walk stops.

    Returns:
        The allocations made and whatever was left over
    """
    remaining = amount
    allocations = []
    for installment in outstanding:
        if not remaining.is_positive():
            break

        amount_due = installment.amount_due
        if remaining >= amount_due:
            allocations.append(InstallmentAllocation(
                installment_id=installment.id,
                installment_number=installment.installment_number,
                applied=amount_due,
                paid_amount=installment.expected_amount,
                status=InstallmentStatus.PAID
            ))
            remaining = remaining - amount_due
        else:
            allocations.append(InstallmentAllocation(
                installment_id=installment.id,
                installment_number=installment.installment_number,
                applied=remaining,
                paid_amount=installment.paid_amount + remaining,
                status=InstallmentStatus.PARTIAL
            ))
            remaining = Money.zero(amount.currency)
    return allocations, remaining


class AllocationEngine:
    """
    Applies payments to loans atomically
    """

    def __init__(
        self,
        store: LedgerStore,
        loan_manager: LoanManager,
        installment_manager: InstallmentManager,
        repayment_ledger: RepaymentLedger
    ):
        self.store = store
        self.loan_manager = loan_manager
        self.installment_manager = installment_manager
        self.repayment_ledger = repayment_ledger

    async def apply_payment(
        self,
        loan_id: str,
        borrower_id: str,
        trans_id: str,
        amount: Decimal,
        phone: Optional[str] = None,
        method: RepaymentMethod = RepaymentMethod.MOBILE_MONEY,
        collected_by_id: str = "mpesa_system",
        payment_date: Optional[datetime] = None
    ) -> AllocationResult:
        """
        Apply a payment to a loan

        Args:
            loan_id: Loan being repaid
            borrower_id: Borrower the payment is attributed to
            trans_id: External transaction id (idempotency key)
            amount: Amount paid, in the loan's currency
            phone: Payer phone number as received
            method: Collection method recorded on the repayment
            collected_by_id: Who or what collected the money
            payment_date: When the payment was made (defaults to now)

        Returns:
            AllocationResult with the loan's new status and balance

        Raises:
            DuplicateTransactionError: If trans_id has already been applied
            LoanNotFoundError: If the loan does not exist
            ValidationError: If the amount is not positive or is finer than the currency allows
            TransactionRetryExhaustedError: If conflicts persist past the retry budget
        """
        if Decimal(amount) <= Decimal('0'):
            raise ValidationError(f"Payment amount must be positive, got {amount}")

        loans_table = self.loan_manager.loans_table
        installments_table = self.installment_manager.installments_table
        repayments_table = self.repayment_ledger.repayments_table
        processed_table = self.repayment_ledger.processed_table

        async def allocate(transaction: Transaction) -> AllocationResult:
            if await transaction.get(processed_table, trans_id):
                raise DuplicateTransactionError(trans_id)

            loan_data = await transaction.get(loans_table, loan_id)
            if not loan_data:
                raise LoanNotFoundError(f"Loan {loan_id} not found")
            loan = self.loan_manager.loan_from_dict(loan_data)
            paid = Money(amount, loan.total_payable.currency)
            if paid.amount != Decimal(amount):
                raise ValidationError(
                    f"Payment amount {amount} has more decimal places than "
                    f"{paid.currency.code} allows"
                )

            outstanding = [
                self.installment_manager.installment_from_dict(data)
                for data in await transaction.find(
                    installments_table,
                    {"loan_id": loan_id, "status__in": OUTSTANDING_STATUSES},
                    order_by="due_date"
                )
            ]
            every_installment = await transaction.find(installments_table, {"loan_id": loan_id})

            # Balance comes from the installments, not from any cached counter on the loan
            total_paid = Money.zero(paid.currency)
            for data in every_installment:
                total_paid = total_paid + self.installment_manager.installment_from_dict(data).paid_amount

            allocations, unallocated = allocate_payment(outstanding, paid)

            total_paid = total_paid + paid
            balance_after_payment = loan.total_payable - total_paid
            new_status = loan.status
            if not balance_after_payment.is_positive() and loan.status == LoanStatus.ACTIVE:
                new_status = LoanStatus.COMPLETED

            now = datetime.now(timezone.utc)
            for allocation in allocations:
                transaction.update(installments_table, allocation.installment_id, {
                    "paid_amount": str(allocation.paid_amount.amount),
                    "status": allocation.status.value,
                    "updated_at": now.isoformat(),
                })

            transaction.update(loans_table, loan_id, {
                "status": new_status.value,
                "last_payment_date": now.isoformat(),
                "updated_at": now.isoformat(),
            })

            repayment = Repayment(
                id=LedgerStore.new_id(),
                created_at=now,
                updated_at=now,
                organization_id=loan.organization_id,
                loan_id=loan_id,
                borrower_id=borrower_id,
                loan_officer_id=loan.loan_officer_id,
                trans_id=trans_id,
                amount=paid,
                payment_date=payment_date or now,
                collected_by_id=collected_by_id,
                method=method,
                phone=phone,
                balance_after_payment=balance_after_payment
            )
            transaction.set(repayments_table, repayment.id, self.repayment_ledger.repayment_to_dict(repayment))
            transaction.set(processed_table, trans_id, {
                "id": trans_id,
                "repayment_id": repayment.id,
                "loan_id": loan_id,
                "created_at": now.isoformat(),
            })

            return AllocationResult(
                loan_id=loan_id,
                repayment_id=repayment.id,
                status=new_status,
                balance_after_payment=balance_after_payment,
                allocations=allocations,
                unallocated=unallocated if unallocated.is_positive() else None
            )

        result = await self.store.run_transaction(allocate)

        log_action(
            logger, "info", "Payment allocated",
            action="payment_allocated", resource=f"loan:{loan_id}", correlation_id=trans_id,
            extra={
                "amount": str(amount),
                "installments_touched": len(result.allocations),
                "balance_after_payment": str(result.balance_after_payment.amount),
                "status": result.status.value,
            }
        )
        if result.unallocated:
            log_action(
                logger, "warning", "Payment exceeded outstanding installments",
                action="overpayment", resource=f"loan:{loan_id}", correlation_id=trans_id,
                extra={"unallocated": str(result.unallocated.amount)}
            )
        return result

    async def record_manual_repayment(
        self,
        loan_id: str,
        amount: Decimal,
        method: RepaymentMethod,
        collected_by_id: str,
        reference: Optional[str] = None,
        payment_date: Optional[datetime] = None
    ) -> AllocationResult:
        """
        Apply a repayment collected by staff (cash, bank transfer)

        The reference (receipt or bank slip number) becomes the transaction
        id, so it shares the ledger-wide uniqueness of mobile-money ids.
        """
        loan = await self.loan_manager.require_loan(loan_id)
        trans_id = reference or f"MANUAL-{LedgerStore.new_id()}"
        return await self.apply_payment(
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            trans_id=trans_id,
            amount=amount,
            method=method,
            collected_by_id=collected_by_id,
            payment_date=payment_date
        )
