"""
Payment Matching Module

Resolves which loan an inbound mobile-money payment funds. The account
reference typed by the payer is tried first as a literal loan id; failing
that, the payer's phone number is mapped to a borrower and their most
recently issued active loan.
"""

from dataclasses import dataclass
from typing import Optional

from .borrowers import BorrowerManager, normalize_phone_number
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import get_logger

logger = get_logger("loan_servicing.matching")


@dataclass
class PaymentMatch:
    """A loan resolved for an inbound payment"""
    loan: Loan
    borrower_id: str
    borrower_phone: Optional[str]       # Where to send the balance SMS, if known
    matched_by: str                     # "reference" or "phone"


class PaymentMatcher:
    """Two-tier loan resolution: explicit reference, then phone number"""

    def __init__(self, loan_manager: LoanManager, borrower_manager: BorrowerManager):
        self.loan_manager = loan_manager
        self.borrower_manager = borrower_manager

    async def match(self, bill_ref_number: Optional[str], msisdn: Optional[str]) -> Optional[PaymentMatch]:
        """
        Resolve the loan a payment should be applied to

        Args:
            bill_ref_number: Account reference entered by the payer
            msisdn: Payer phone number in international format

        Returns:
            PaymentMatch, or None when the payment cannot be attributed
        """
        reference = (bill_ref_number or "").strip()
        if reference:
            match = await self._match_by_reference(reference)
            if match:
                return match
            logger.info(f"Reference {reference!r} is not a known loan id, trying phone number")

        if msisdn:
            return await self._match_by_phone(msisdn)
        return None

    async def _match_by_reference(self, reference: str) -> Optional[PaymentMatch]:
        loan = await self.loan_manager.get_loan(reference)
        if not loan:
            return None
        borrower = await self.borrower_manager.get_borrower(loan.borrower_id)
        return PaymentMatch(
            loan=loan,
            borrower_id=loan.borrower_id,
            borrower_phone=borrower.phone if borrower else None,
            matched_by="reference"
        )

    async def _match_by_phone(self, msisdn: str) -> Optional[PaymentMatch]:
        phone = normalize_phone_number(msisdn.strip())
        if not phone:
            logger.info(f"Phone number {msisdn!r} is not in 254XXXXXXXXX form, skipping phone match")
            return None

        borrower = await self.borrower_manager.find_by_phone(phone)
        if not borrower:
            return None

        # Most recently issued active loan wins
        active_loans = await self.loan_manager.get_borrower_loans(borrower.id, status=LoanStatus.ACTIVE)
        if not active_loans:
            logger.info(f"Borrower {borrower.id} has no active loan")
            return None

        return PaymentMatch(
            loan=active_loans[0],
            borrower_id=borrower.id,
            borrower_phone=borrower.phone,
            matched_by="phone"
        )
