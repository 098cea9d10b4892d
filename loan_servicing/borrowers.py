"""
Borrower Module

Borrower profiles and the phone-number canonicalization used to match
inbound mobile-money payments to the people who sent them.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional

from .async_storage import LedgerStore
from .storage import StorageRecord
from .exceptions import BorrowerNotFoundError, ValidationError


def normalize_phone_number(msisdn: str) -> Optional[str]:
    """
    Rewrite an international Kenyan number (``254XXXXXXXXX``) to local form.

    >>> normalize_phone_number("254712345678")
    '0712345678'

    Anything that is not exactly twelve characters starting with ``254``
    yields None.
    """
    if msisdn and msisdn.startswith("254") and len(msisdn) == 12:
        return "0" + msisdn[3:]
    return None


def canonical_phone_number(phone: str) -> str:
    """Canonical local form for a phone number entered by staff"""
    cleaned = (phone or "").replace(" ", "").replace("-", "").lstrip("+")
    normalized = normalize_phone_number(cleaned)
    if normalized:
        return normalized
    if cleaned.startswith("0") and len(cleaned) == 10 and cleaned.isdigit():
        return cleaned
    raise ValidationError(f"Invalid phone number: {phone}")


@dataclass
class Borrower(StorageRecord):
    """A person who can hold loans"""
    organization_id: str
    full_name: str
    phone: str                          # Canonical local form, e.g. 0712345678
    branch_id: str
    national_id: Optional[str] = None
    email: Optional[str] = None


class BorrowerManager:
    """Registers borrowers and looks them up by id or phone"""

    def __init__(self, store: LedgerStore):
        self.store = store
        self.borrowers_table = "borrowers"

    async def create_borrower(
        self,
        organization_id: str,
        full_name: str,
        phone: str,
        branch_id: str,
        national_id: Optional[str] = None,
        email: Optional[str] = None
    ) -> Borrower:
        """
        Register a borrower

        The phone number is stored in canonical local form so fallback
        payment matching can compare it directly.

        Raises:
            ValidationError: If the phone number is malformed or already registered
        """
        phone = canonical_phone_number(phone)
        if await self.find_by_phone(phone):
            raise ValidationError(f"A borrower with phone {phone} already exists")

        now = datetime.now(timezone.utc)
        borrower = Borrower(
            id=LedgerStore.new_id(),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            full_name=full_name,
            phone=phone,
            branch_id=branch_id,
            national_id=national_id,
            email=email
        )
        await self.store.set(self.borrowers_table, borrower.id, borrower.to_dict())
        return borrower

    async def get_borrower(self, borrower_id: str) -> Optional[Borrower]:
        """Get borrower by ID"""
        data = await self.store.get(self.borrowers_table, borrower_id)
        if data:
            return self._borrower_from_dict(data)
        return None

    async def require_borrower(self, borrower_id: str) -> Borrower:
        borrower = await self.get_borrower(borrower_id)
        if not borrower:
            raise BorrowerNotFoundError(f"Borrower {borrower_id} not found")
        return borrower

    async def find_by_phone(self, phone: str) -> Optional[Borrower]:
        """Find the borrower registered with a canonical local phone number"""
        found = await self.store.find(self.borrowers_table, {"phone": phone}, limit=1)
        if found:
            return self._borrower_from_dict(found[0])
        return None

    async def list_borrowers(self, organization_id: str) -> List[Borrower]:
        found = await self.store.find(
            self.borrowers_table, {"organization_id": organization_id}, order_by="full_name"
        )
        return [self._borrower_from_dict(data) for data in found]

    def _borrower_from_dict(self, data: Dict) -> Borrower:
        return Borrower(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            full_name=data['full_name'],
            phone=data['phone'],
            branch_id=data['branch_id'],
            national_id=data.get('national_id'),
            email=data.get('email')
        )
