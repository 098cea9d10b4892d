"""
Repayment Ledger Module

Append-only record of every payment applied to a loan. The external
transaction id on each entry is unique across the whole ledger and is the
idempotency key for inbound payments.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .currency import Money, Currency
from .storage import StorageRecord
from .async_storage import LedgerStore


class RepaymentMethod(Enum):
    """How a repayment was collected"""
    CASH = "Cash"
    BANK_TRANSFER = "Bank Transfer"
    MOBILE_MONEY = "Mobile Money"


@dataclass
class Repayment(StorageRecord):
    """One payment applied to a loan"""
    organization_id: str
    loan_id: str
    borrower_id: str
    trans_id: str                       # External transaction id, unique ledger-wide
    amount: Money
    payment_date: datetime
    collected_by_id: str
    method: RepaymentMethod
    balance_after_payment: Money
    loan_officer_id: Optional[str] = None
    phone: Optional[str] = None


class RepaymentLedger:
    """Queries over the repayment ledger"""

    def __init__(self, store: LedgerStore):
        self.store = store
        self.repayments_table = "repayments"
        self.processed_table = "processed_transactions"

    async def is_processed(self, trans_id: str) -> bool:
        """Whether any repayment anywhere already carries this transaction id"""
        return await self.get_by_trans_id(trans_id) is not None

    async def get_by_trans_id(self, trans_id: str) -> Optional[Repayment]:
        found = await self.store.find(self.repayments_table, {"trans_id": trans_id}, limit=1)
        if found:
            return self.repayment_from_dict(found[0])
        return None

    async def get_repayment(self, repayment_id: str) -> Optional[Repayment]:
        data = await self.store.get(self.repayments_table, repayment_id)
        if data:
            return self.repayment_from_dict(data)
        return None

    async def get_loan_repayments(self, loan_id: str) -> List[Repayment]:
        """Payment history for a loan, oldest first"""
        found = await self.store.find(
            self.repayments_table, {"loan_id": loan_id}, order_by="payment_date"
        )
        return [self.repayment_from_dict(data) for data in found]

    @staticmethod
    def repayment_to_dict(repayment: Repayment) -> Dict:
        return {
            'id': repayment.id,
            'created_at': repayment.created_at.isoformat(),
            'updated_at': repayment.updated_at.isoformat(),
            'organization_id': repayment.organization_id,
            'loan_id': repayment.loan_id,
            'borrower_id': repayment.borrower_id,
            'loan_officer_id': repayment.loan_officer_id,
            'trans_id': repayment.trans_id,
            'amount': str(repayment.amount.amount),
            'currency': repayment.amount.currency.code,
            'payment_date': repayment.payment_date.isoformat(),
            'collected_by_id': repayment.collected_by_id,
            'method': repayment.method.value,
            'phone': repayment.phone,
            'balance_after_payment': str(repayment.balance_after_payment.amount),
        }

    @staticmethod
    def repayment_from_dict(data: Dict) -> Repayment:
        currency = Currency[data['currency']]
        return Repayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            loan_officer_id=data.get('loan_officer_id'),
            trans_id=data['trans_id'],
            amount=Money(Decimal(data['amount']), currency),
            payment_date=datetime.fromisoformat(data['payment_date']),
            collected_by_id=data['collected_by_id'],
            method=RepaymentMethod(data['method']),
            phone=data.get('phone'),
            balance_after_payment=Money(Decimal(data['balance_after_payment']), currency)
        )
