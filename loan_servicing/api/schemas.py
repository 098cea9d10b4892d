"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..currency import Money
from ..borrowers import Borrower
from ..installments import Installment, RepaymentCycle
from ..loans import Loan, LoanProduct, LoanSummary
from ..repayments import Repayment, RepaymentMethod
from ..allocation import AllocationResult


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (KES, UGX, ...)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Borrower schemas
class CreateBorrowerRequest(BaseModel):
    organization_id: str
    full_name: str
    phone: str
    branch_id: str
    national_id: Optional[str] = None
    email: Optional[str] = None


# Product schemas
class CreateProductRequest(BaseModel):
    organization_id: str
    name: str
    category: str = "General"
    min_amount: Decimal
    max_amount: Decimal
    interest_rate: Decimal = Field(..., description="Flat percentage of principal")
    duration: int = Field(..., ge=1, description="Number of installments")
    repayment_cycle: RepaymentCycle
    processing_fee: Optional[Decimal] = None


# Loan schemas
class CreateLoanRequest(BaseModel):
    borrower_id: str
    product_id: str
    principal: Decimal
    loan_officer_id: str
    branch_id: str
    submit: bool = False


class ApproveLoanRequest(BaseModel):
    approved_by_id: str


class DisburseLoanRequest(BaseModel):
    disbursement_date: Optional[date] = None
    repayment_cycle: Optional[RepaymentCycle] = None
    approved_by_id: Optional[str] = None  # Approve a pending loan in the same step


# Repayment schemas
class ManualRepaymentRequest(BaseModel):
    loan_id: str
    amount: Decimal = Field(..., gt=0)
    method: RepaymentMethod
    collected_by_id: str
    reference: Optional[str] = None


class ReplayRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1)


def borrower_response(borrower: Borrower) -> Dict[str, Any]:
    return {
        "id": borrower.id,
        "organization_id": borrower.organization_id,
        "full_name": borrower.full_name,
        "phone": borrower.phone,
        "branch_id": borrower.branch_id,
        "national_id": borrower.national_id,
        "email": borrower.email,
        "created_at": borrower.created_at.isoformat(),
    }


def product_response(product: LoanProduct) -> Dict[str, Any]:
    return {
        "id": product.id,
        "organization_id": product.organization_id,
        "name": product.name,
        "category": product.category,
        "min_amount": MoneyModel.from_money(product.min_amount).model_dump(),
        "max_amount": MoneyModel.from_money(product.max_amount).model_dump(),
        "interest_rate": str(product.interest_rate),
        "duration": product.duration,
        "repayment_cycle": product.repayment_cycle.value,
        "processing_fee": (
            MoneyModel.from_money(product.processing_fee).model_dump() if product.processing_fee else None
        ),
    }


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "organization_id": loan.organization_id,
        "borrower_id": loan.borrower_id,
        "loan_product_id": loan.loan_product_id,
        "status": loan.status.value,
        "principal": MoneyModel.from_money(loan.principal).model_dump(),
        "interest_rate": str(loan.interest_rate),
        "total_payable": MoneyModel.from_money(loan.total_payable).model_dump(),
        "installment_amount": MoneyModel.from_money(loan.installment_amount).model_dump(),
        "duration": loan.duration,
        "repayment_cycle": loan.repayment_cycle.value,
        "loan_officer_id": loan.loan_officer_id,
        "branch_id": loan.branch_id,
        "issue_date": loan.issue_date.isoformat() if loan.issue_date else None,
        "last_payment_date": loan.last_payment_date.isoformat() if loan.last_payment_date else None,
        "approved_by_id": loan.approved_by_id,
    }


def installment_response(installment: Installment) -> Dict[str, Any]:
    return {
        "id": installment.id,
        "installment_number": installment.installment_number,
        "due_date": installment.due_date.isoformat(),
        "expected_amount": MoneyModel.from_money(installment.expected_amount).model_dump(),
        "paid_amount": MoneyModel.from_money(installment.paid_amount).model_dump(),
        "status": installment.status.value,
    }


def summary_response(summary: LoanSummary) -> Dict[str, Any]:
    return {
        "loan": loan_response(summary.loan),
        "total_paid": MoneyModel.from_money(summary.total_paid).model_dump(),
        "outstanding_balance": MoneyModel.from_money(summary.outstanding_balance).model_dump(),
        "paid_count": summary.paid_count,
        "overdue_count": summary.overdue_count,
        "next_due": installment_response(summary.next_due) if summary.next_due else None,
        "installments": [installment_response(i) for i in summary.installments],
    }


def repayment_response(repayment: Repayment) -> Dict[str, Any]:
    return {
        "id": repayment.id,
        "loan_id": repayment.loan_id,
        "borrower_id": repayment.borrower_id,
        "trans_id": repayment.trans_id,
        "amount": MoneyModel.from_money(repayment.amount).model_dump(),
        "payment_date": repayment.payment_date.isoformat(),
        "method": repayment.method.value,
        "collected_by_id": repayment.collected_by_id,
        "phone": repayment.phone,
        "balance_after_payment": MoneyModel.from_money(repayment.balance_after_payment).model_dump(),
    }


def allocation_response(result: AllocationResult) -> Dict[str, Any]:
    return {
        "loan_id": result.loan_id,
        "repayment_id": result.repayment_id,
        "status": result.status.value,
        "balance_after_payment": MoneyModel.from_money(result.balance_after_payment).model_dump(),
        "allocations": [
            {
                "installment_id": a.installment_id,
                "installment_number": a.installment_number,
                "applied": MoneyModel.from_money(a.applied).model_dump(),
                "status": a.status.value,
            }
            for a in result.allocations
        ],
        "unallocated": MoneyModel.from_money(result.unallocated).model_dump() if result.unallocated else None,
    }


class FailedCallbackList(BaseModel):
    count: int
    entries: List[Dict[str, Any]]
