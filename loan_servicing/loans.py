"""
Loan Module

Handles loan products, loan origination, the approval workflow, and
disbursement (which generates the repayment schedule and activates the
loan in a single atomic write).
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple
from enum import Enum

from .currency import Money, Currency
from .storage import StorageRecord
from .async_storage import LedgerStore, Transaction
from .installments import (
    Installment, InstallmentManager, InstallmentStatus, RepaymentCycle,
    derive_installment_status, generate_installment_schedule
)
from .exceptions import (
    LoanNotFoundError, InvalidLoanStateError, ScheduleAlreadyExistsError, ValidationError
)
from .logging_config import get_logger, log_action

logger = get_logger("loan_servicing.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    DRAFT = "Draft"
    PENDING_APPROVAL = "Pending Approval"
    APPROVED = "Approved"
    ACTIVE = "Active"                 # Disbursed and in repayment
    COMPLETED = "Completed"           # Fully repaid
    REJECTED = "Rejected"


# Statuses only ever move forward along these edges
ALLOWED_TRANSITIONS = {
    LoanStatus.DRAFT: {LoanStatus.PENDING_APPROVAL},
    LoanStatus.PENDING_APPROVAL: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.ACTIVE, LoanStatus.REJECTED},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED},
    LoanStatus.COMPLETED: set(),
    LoanStatus.REJECTED: set(),
}


@dataclass
class LoanProduct(StorageRecord):
    """A loan offering with its pricing and repayment terms"""
    organization_id: str
    name: str
    category: str
    min_amount: Money
    max_amount: Money
    interest_rate: Decimal              # Flat percentage of principal, e.g. 10 for 10%
    duration: int                       # Number of installments
    repayment_cycle: RepaymentCycle
    processing_fee: Optional[Money] = None

    def __post_init__(self):
        if self.min_amount > self.max_amount:
            raise ValueError("Minimum amount cannot exceed maximum amount")
        if self.duration < 1:
            raise ValueError("Duration must be at least one installment")
        if self.interest_rate < Decimal('0'):
            raise ValueError("Interest rate cannot be negative")


@dataclass
class Loan(StorageRecord):
    """A loan issued to a borrower"""
    organization_id: str
    borrower_id: str
    loan_product_id: str
    principal: Money
    interest_rate: Decimal
    total_payable: Money                # Principal plus interest
    installment_amount: Money
    duration: int
    repayment_cycle: RepaymentCycle
    loan_officer_id: str
    branch_id: str
    status: LoanStatus = LoanStatus.DRAFT
    issue_date: Optional[date] = None
    last_payment_date: Optional[datetime] = None
    approved_by_id: Optional[str] = None

    def __post_init__(self):
        if self.total_payable < self.principal:
            raise ValueError("Total payable cannot be less than the principal")


@dataclass
class LoanSummary:
    """Repayment position of a loan as shown to staff and borrowers"""
    loan: Loan
    total_paid: Money
    outstanding_balance: Money
    installments: List[Installment] = field(default_factory=list)
    paid_count: int = 0
    overdue_count: int = 0
    next_due: Optional[Installment] = None


class LoanManager:
    """
    Manages loan lifecycle from origination through disbursement
    """

    def __init__(self, store: LedgerStore, installment_manager: InstallmentManager,
                 currency: Currency = Currency.KES):
        self.store = store
        self.installment_manager = installment_manager
        self.currency = currency

        self.loans_table = "loans"
        self.products_table = "loan_products"

    async def create_product(
        self,
        organization_id: str,
        name: str,
        category: str,
        min_amount: Decimal,
        max_amount: Decimal,
        interest_rate: Decimal,
        duration: int,
        repayment_cycle: RepaymentCycle,
        processing_fee: Optional[Decimal] = None
    ) -> LoanProduct:
        """Define a loan product"""
        now = datetime.now(timezone.utc)
        try:
            product = LoanProduct(
                id=LedgerStore.new_id(),
                created_at=now,
                updated_at=now,
                organization_id=organization_id,
                name=name,
                category=category,
                min_amount=Money(min_amount, self.currency),
                max_amount=Money(max_amount, self.currency),
                interest_rate=Decimal(str(interest_rate)),
                duration=duration,
                repayment_cycle=repayment_cycle,
                processing_fee=Money(processing_fee, self.currency) if processing_fee is not None else None
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        await self.store.set(self.products_table, product.id, self._product_to_dict(product))
        return product

    async def get_product(self, product_id: str) -> Optional[LoanProduct]:
        data = await self.store.get(self.products_table, product_id)
        if data:
            return self._product_from_dict(data)
        return None

    async def create_loan(
        self,
        borrower_id: str,
        product_id: str,
        principal: Decimal,
        loan_officer_id: str,
        branch_id: str,
        submit: bool = False
    ) -> Loan:
        """
        Originate a loan from a product

        Interest is a flat percentage of the principal; the installment
        amount is the total payable spread evenly over the product duration.

        Args:
            borrower_id: Borrower taking the loan
            product_id: Loan product being offered
            principal: Amount to lend
            loan_officer_id: Officer who owns the loan
            branch_id: Branch the loan is booked at
            submit: Place the loan straight into Pending Approval

        Returns:
            The stored Loan
        """
        product = await self.get_product(product_id)
        if not product:
            raise ValidationError(f"Loan product {product_id} not found")

        principal_money = Money(principal, self.currency)
        if principal_money < product.min_amount or principal_money > product.max_amount:
            raise ValidationError(
                f"Principal {principal_money.to_string()} is outside the product range "
                f"{product.min_amount.to_string()} - {product.max_amount.to_string()}"
            )

        interest = principal_money * (product.interest_rate / Decimal('100'))
        total_payable = principal_money + interest
        installment_amount = total_payable / Decimal(product.duration)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=LedgerStore.new_id(),
            created_at=now,
            updated_at=now,
            organization_id=product.organization_id,
            borrower_id=borrower_id,
            loan_product_id=product.id,
            principal=principal_money,
            interest_rate=product.interest_rate,
            total_payable=total_payable,
            installment_amount=installment_amount,
            duration=product.duration,
            repayment_cycle=product.repayment_cycle,
            loan_officer_id=loan_officer_id,
            branch_id=branch_id,
            status=LoanStatus.PENDING_APPROVAL if submit else LoanStatus.DRAFT,
            issue_date=now.date()
        )
        await self.store.set(self.loans_table, loan.id, self.loan_to_dict(loan))

        log_action(
            logger, "info", "Loan originated",
            action="loan_originated", resource=f"loan:{loan.id}",
            extra={
                "borrower_id": borrower_id,
                "principal": principal_money.to_string(),
                "total_payable": total_payable.to_string(),
                "status": loan.status.value
            }
        )
        return loan

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = await self.store.get(self.loans_table, loan_id)
        if data:
            return self.loan_from_dict(data)
        return None

    async def require_loan(self, loan_id: str) -> Loan:
        loan = await self.get_loan(loan_id)
        if not loan:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    async def get_borrower_loans(self, borrower_id: str,
                                 status: Optional[LoanStatus] = None) -> List[Loan]:
        """A borrower's loans, most recently issued first"""
        filters = {"borrower_id": borrower_id}
        if status:
            filters["status"] = status.value
        found = await self.store.find(self.loans_table, filters, order_by="issue_date", descending=True)
        return [self.loan_from_dict(data) for data in found]

    async def submit_for_approval(self, loan_id: str) -> Loan:
        return await self._transition(loan_id, LoanStatus.PENDING_APPROVAL)

    async def approve_loan(self, loan_id: str, approved_by_id: str) -> Loan:
        return await self._transition(
            loan_id, LoanStatus.APPROVED, {"approved_by_id": approved_by_id}
        )

    async def reject_loan(self, loan_id: str) -> Loan:
        return await self._transition(loan_id, LoanStatus.REJECTED)

    async def disburse_loan(
        self,
        loan_id: str,
        disbursement_date: Optional[date] = None,
        repayment_cycle: Optional[RepaymentCycle] = None,
        approved_by_id: Optional[str] = None
    ) -> Tuple[Loan, List[Installment]]:
        """
        Disburse an approved loan

        Generates the installment schedule and flips the loan to Active with
        ``issue_date`` set to the disbursement date, all in one atomic write.
        Passing ``approved_by_id`` lets a Pending Approval loan be approved
        and disbursed in the same step.

        Raises:
            InvalidLoanStateError: If the loan is not Approved (or Pending
                Approval with an approver)
            ScheduleAlreadyExistsError: If the loan already has installments
        """
        disbursement_date = disbursement_date or date.today()

        async def disburse(transaction: Transaction) -> Tuple[Loan, List[Installment]]:
            data = await transaction.get(self.loans_table, loan_id)
            if not data:
                raise LoanNotFoundError(f"Loan {loan_id} not found")
            loan = self.loan_from_dict(data)

            if loan.status == LoanStatus.PENDING_APPROVAL and approved_by_id:
                loan = replace(loan, status=LoanStatus.APPROVED, approved_by_id=approved_by_id)
            self._check_transition(loan, LoanStatus.ACTIVE)

            existing = await transaction.find(
                self.installment_manager.installments_table, {"loan_id": loan_id}, limit=1
            )
            if existing:
                raise ScheduleAlreadyExistsError(f"Loan {loan_id} already has a repayment schedule")

            schedule = generate_installment_schedule(
                principal=loan.principal,
                total_payable=loan.total_payable,
                duration=loan.duration,
                cycle=repayment_cycle or loan.repayment_cycle,
                disbursement_date=disbursement_date
            )

            activated = replace(
                loan,
                status=LoanStatus.ACTIVE,
                issue_date=disbursement_date,
                updated_at=datetime.now(timezone.utc)
            )
            installments = self.installment_manager.build_installments(activated, schedule)

            transaction.update(self.loans_table, loan_id, {
                "status": activated.status.value,
                "issue_date": disbursement_date.isoformat(),
                "approved_by_id": activated.approved_by_id,
                "updated_at": activated.updated_at.isoformat(),
            })
            for installment in installments:
                transaction.set(
                    self.installment_manager.installments_table,
                    installment.id,
                    self.installment_manager.installment_to_dict(installment)
                )
            return activated, installments

        loan, installments = await self.store.run_transaction(disburse)

        log_action(
            logger, "info", "Loan disbursed",
            action="loan_disbursed", resource=f"loan:{loan.id}",
            extra={
                "issue_date": disbursement_date.isoformat(),
                "installments": len(installments),
                "repayment_cycle": (repayment_cycle or loan.repayment_cycle).value
            }
        )
        return loan, installments

    async def get_loan_summary(self, loan_id: str, today: Optional[date] = None) -> LoanSummary:
        """
        Repayment position of a loan

        Totals come from the installments themselves. Installment statuses
        are re-derived for display, so anything past due shows as Overdue
        even if the stored status has not been refreshed yet.
        """
        today = today or date.today()
        loan = await self.require_loan(loan_id)
        installments = await self.installment_manager.get_installments(loan_id)

        total_paid = Money.zero(loan.total_payable.currency)
        displayed = []
        for installment in installments:
            total_paid = total_paid + installment.paid_amount
            status = derive_installment_status(
                installment.paid_amount, installment.expected_amount, installment.due_date, today
            )
            displayed.append(replace(installment, status=status))

        outstanding = [i for i in displayed if i.status != InstallmentStatus.PAID]
        return LoanSummary(
            loan=loan,
            total_paid=total_paid,
            outstanding_balance=loan.total_payable - total_paid,
            installments=displayed,
            paid_count=len(displayed) - len(outstanding),
            overdue_count=sum(1 for i in outstanding if i.status == InstallmentStatus.OVERDUE),
            next_due=outstanding[0] if outstanding else None
        )

    def _check_transition(self, loan: Loan, new_status: LoanStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[loan.status]:
            raise InvalidLoanStateError(
                f"Cannot move loan {loan.id} from {loan.status.value} to {new_status.value}"
            )

    async def _transition(self, loan_id: str, new_status: LoanStatus,
                          fields: Optional[Dict] = None) -> Loan:
        async def transition(transaction: Transaction) -> Loan:
            data = await transaction.get(self.loans_table, loan_id)
            if not data:
                raise LoanNotFoundError(f"Loan {loan_id} not found")
            loan = self.loan_from_dict(data)
            self._check_transition(loan, new_status)

            changes = {"status": new_status.value, "updated_at": datetime.now(timezone.utc).isoformat()}
            changes.update(fields or {})
            transaction.update(self.loans_table, loan_id, changes)
            data.update(changes)
            return self.loan_from_dict(data)

        loan = await self.store.run_transaction(transition)
        log_action(
            logger, "info", f"Loan moved to {new_status.value}",
            action="loan_status_changed", resource=f"loan:{loan_id}",
            extra={"status": new_status.value}
        )
        return loan

    @staticmethod
    def loan_to_dict(loan: Loan) -> Dict:
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'organization_id': loan.organization_id,
            'borrower_id': loan.borrower_id,
            'loan_product_id': loan.loan_product_id,
            'principal': str(loan.principal.amount),
            'interest_rate': str(loan.interest_rate),
            'total_payable': str(loan.total_payable.amount),
            'installment_amount': str(loan.installment_amount.amount),
            'currency': loan.principal.currency.code,
            'duration': loan.duration,
            'repayment_cycle': loan.repayment_cycle.value,
            'loan_officer_id': loan.loan_officer_id,
            'branch_id': loan.branch_id,
            'status': loan.status.value,
            'issue_date': loan.issue_date.isoformat() if loan.issue_date else None,
            'last_payment_date': loan.last_payment_date.isoformat() if loan.last_payment_date else None,
            'approved_by_id': loan.approved_by_id,
        }

    @staticmethod
    def loan_from_dict(data: Dict) -> Loan:
        currency = Currency[data['currency']]

        def get_money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            borrower_id=data['borrower_id'],
            loan_product_id=data['loan_product_id'],
            principal=get_money('principal'),
            interest_rate=Decimal(data['interest_rate']),
            total_payable=get_money('total_payable'),
            installment_amount=get_money('installment_amount'),
            duration=data['duration'],
            repayment_cycle=RepaymentCycle(data['repayment_cycle']),
            loan_officer_id=data['loan_officer_id'],
            branch_id=data['branch_id'],
            status=LoanStatus(data['status']),
            issue_date=date.fromisoformat(data['issue_date']) if data.get('issue_date') else None,
            last_payment_date=(
                datetime.fromisoformat(data['last_payment_date']) if data.get('last_payment_date') else None
            ),
            approved_by_id=data.get('approved_by_id')
        )

    def _product_to_dict(self, product: LoanProduct) -> Dict:
        result = {
            'id': product.id,
            'created_at': product.created_at.isoformat(),
            'updated_at': product.updated_at.isoformat(),
            'organization_id': product.organization_id,
            'name': product.name,
            'category': product.category,
            'min_amount': str(product.min_amount.amount),
            'max_amount': str(product.max_amount.amount),
            'currency': product.min_amount.currency.code,
            'interest_rate': str(product.interest_rate),
            'duration': product.duration,
            'repayment_cycle': product.repayment_cycle.value,
            'processing_fee': None,
        }
        if product.processing_fee:
            result['processing_fee'] = str(product.processing_fee.amount)
        return result

    def _product_from_dict(self, data: Dict) -> LoanProduct:
        currency = Currency[data['currency']]
        return LoanProduct(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            name=data['name'],
            category=data['category'],
            min_amount=Money(Decimal(data['min_amount']), currency),
            max_amount=Money(Decimal(data['max_amount']), currency),
            interest_rate=Decimal(data['interest_rate']),
            duration=data['duration'],
            repayment_cycle=RepaymentCycle(data['repayment_cycle']),
            processing_fee=(
                Money(Decimal(data['processing_fee']), currency) if data.get('processing_fee') else None
            )
        )
