"""
Installment Module

Repayment schedule generation at disbursement time, the installment
record itself, and the rule that derives an installment's status from
what has been paid and when it falls due.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import calendar

from .currency import Money, Currency
from .storage import StorageRecord
from .async_storage import LedgerStore, Transaction
from .exceptions import ValidationError


class InstallmentStatus(Enum):
    """Installment repayment states"""
    UNPAID = "Unpaid"
    PARTIAL = "Partial"
    PAID = "Paid"
    OVERDUE = "Overdue"


OUTSTANDING_STATUSES = [
    InstallmentStatus.UNPAID.value,
    InstallmentStatus.PARTIAL.value,
    InstallmentStatus.OVERDUE.value,
]


class RepaymentCycle(Enum):
    """How often installments fall due"""
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


@dataclass
class ScheduleEntry:
    """One line of a generated repayment schedule"""
    installment_number: int
    due_date: date
    expected_amount: Money


@dataclass
class Installment(StorageRecord):
    """A scheduled partial repayment of a loan"""
    loan_id: str
    borrower_id: str
    organization_id: str
    branch_id: str
    loan_officer_id: str
    installment_number: int
    due_date: date
    expected_amount: Money
    paid_amount: Money
    status: InstallmentStatus = InstallmentStatus.UNPAID

    def __post_init__(self):
        if self.paid_amount.is_negative() or self.paid_amount > self.expected_amount:
            raise ValueError(
                f"Paid amount {self.paid_amount.to_string()} must be between 0 and "
                f"{self.expected_amount.to_string()}"
            )

    @property
    def amount_due(self) -> Money:
        return self.expected_amount - self.paid_amount

    @property
    def is_outstanding(self) -> bool:
        return self.status.value in OUTSTANDING_STATUSES


def derive_installment_status(paid_amount: Money, expected_amount: Money,
                              due_date: date, today: date) -> InstallmentStatus:
    """Paid when settled, else Overdue once past due, else Partial or Unpaid"""
    if paid_amount == expected_amount:
        return InstallmentStatus.PAID
    if due_date < today:
        return InstallmentStatus.OVERDUE
    if paid_amount.is_positive():
        return InstallmentStatus.PARTIAL
    return InstallmentStatus.UNPAID


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_due_date(current: date, cycle: RepaymentCycle) -> date:
    if cycle == RepaymentCycle.MONTHLY:
        return add_months(current, 1)
    if cycle == RepaymentCycle.WEEKLY:
        return current + timedelta(weeks=1)
    raise ValueError(f"Unsupported repayment cycle: {cycle}")


def generate_installment_schedule(
    principal: Money,
    total_payable: Money,
    duration: int,
    cycle: RepaymentCycle,
    disbursement_date: date
) -> List[ScheduleEntry]:
    """
    Generate an equal-installment repayment schedule

    Each due date is one cycle after the previous one, starting one cycle
    after disbursement. Every installment expects ``total_payable / duration``
    rounded to the currency's precision; the rounding remainder is not
    pushed onto any installment, so the schedule total can differ from
    ``total_payable`` by a few minor units.

    Args:
        principal: Amount lent
        total_payable: Principal plus interest
        duration: Number of installments
        cycle: Weekly or monthly
        disbursement_date: Date the funds were released

    Returns:
        Entries numbered 1..duration with strictly increasing due dates
    """
    if duration < 1:
        raise ValidationError("Loan duration must be at least one installment")
    if total_payable < principal:
        raise ValidationError("Total payable cannot be less than the principal")

    expected_amount = total_payable / Decimal(duration)

    schedule = []
    due_date = disbursement_date
    for number in range(1, duration + 1):
        due_date = next_due_date(due_date, cycle)
        schedule.append(ScheduleEntry(
            installment_number=number,
            due_date=due_date,
            expected_amount=expected_amount
        ))
    return schedule


class InstallmentManager:
    """Reads and maintains a loan's installments"""

    def __init__(self, store: LedgerStore):
        self.store = store
        self.installments_table = "installments"

    @staticmethod
    def installment_id(loan_id: str, installment_number: int) -> str:
        return f"{loan_id}_{installment_number}"

    async def get_installments(self, loan_id: str) -> List[Installment]:
        """All installments of a loan, in installment-number order"""
        found = await self.store.find(
            self.installments_table, {"loan_id": loan_id}, order_by="installment_number"
        )
        return [self.installment_from_dict(data) for data in found]

    async def has_installments(self, loan_id: str) -> bool:
        found = await self.store.find(self.installments_table, {"loan_id": loan_id}, limit=1)
        return bool(found)

    async def refresh_overdue(self, loan_id: str, today: Optional[date] = None) -> int:
        """
        Persist Overdue for every past-due installment that is not yet settled

        Returns:
            Number of installments whose stored status changed
        """
        today = today or date.today()

        async def mark_overdue(transaction: Transaction) -> int:
            found = await transaction.find(
                self.installments_table,
                {
                    "loan_id": loan_id,
                    "status__in": [InstallmentStatus.UNPAID.value, InstallmentStatus.PARTIAL.value],
                    "due_date__lt": today.isoformat(),
                }
            )
            for data in found:
                transaction.update(self.installments_table, data["id"], {
                    "status": InstallmentStatus.OVERDUE.value,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                })
            return len(found)

        return await self.store.run_transaction(mark_overdue)

    def build_installments(self, loan, schedule: List[ScheduleEntry]) -> List[Installment]:
        """Turn schedule entries into unpaid installment records owned by ``loan``"""
        now = datetime.now(timezone.utc)
        zero = Money.zero(loan.principal.currency)
        return [
            Installment(
                id=self.installment_id(loan.id, entry.installment_number),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                borrower_id=loan.borrower_id,
                organization_id=loan.organization_id,
                branch_id=loan.branch_id,
                loan_officer_id=loan.loan_officer_id,
                installment_number=entry.installment_number,
                due_date=entry.due_date,
                expected_amount=entry.expected_amount,
                paid_amount=zero,
                status=InstallmentStatus.UNPAID
            )
            for entry in schedule
        ]

    @staticmethod
    def installment_to_dict(installment: Installment) -> Dict:
        return {
            'id': installment.id,
            'created_at': installment.created_at.isoformat(),
            'updated_at': installment.updated_at.isoformat(),
            'loan_id': installment.loan_id,
            'borrower_id': installment.borrower_id,
            'organization_id': installment.organization_id,
            'branch_id': installment.branch_id,
            'loan_officer_id': installment.loan_officer_id,
            'installment_number': installment.installment_number,
            'due_date': installment.due_date.isoformat(),
            'expected_amount': str(installment.expected_amount.amount),
            'paid_amount': str(installment.paid_amount.amount),
            'currency': installment.expected_amount.currency.code,
            'status': installment.status.value,
        }

    @staticmethod
    def installment_from_dict(data: Dict) -> Installment:
        currency = Currency[data['currency']]
        return Installment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            organization_id=data['organization_id'],
            branch_id=data['branch_id'],
            loan_officer_id=data['loan_officer_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            expected_amount=Money(Decimal(data['expected_amount']), currency),
            paid_amount=Money(Decimal(data['paid_amount']), currency),
            status=InstallmentStatus(data['status'])
        )
