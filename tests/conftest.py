"""
Shared fixtures: an in-memory servicing system and a disbursed loan
"""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio

from loan_servicing.config import ServicingConfig
from loan_servicing.storage import InMemoryStorage
from loan_servicing.async_storage import LedgerStore
from loan_servicing.installments import RepaymentCycle
from loan_servicing.notifications import LogSMSProvider
from loan_servicing.api.dependencies import ServicingSystem


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def store(storage):
    return LedgerStore(storage, retry_delay=0)


@pytest.fixture
def sms_provider():
    return LogSMSProvider()


@pytest.fixture
def servicing_config():
    return ServicingConfig(database_url="memory://", sms_provider="log", sms_enabled=True)


@pytest.fixture
def system(storage, sms_provider, servicing_config):
    return ServicingSystem(storage, sms_provider, config=servicing_config)


async def make_active_loan(system, phone="0712345678", principal=Decimal("3000"),
                           duration=3, cycle=RepaymentCycle.MONTHLY,
                           disbursement_date=None):
    """
    Register a borrower and disburse a 10% flat-interest loan to them.

    With the defaults: total payable KES 3,300.00 over three installments
    of KES 1,100.00.
    """
    borrower = await system.borrower_manager.create_borrower(
        organization_id="org-1",
        full_name="Wanjiru Kamau",
        phone=phone,
        branch_id="branch-1"
    )
    product = await system.loan_manager.create_product(
        organization_id="org-1",
        name="Biashara Loan",
        category="Business",
        min_amount=Decimal("1000"),
        max_amount=Decimal("100000"),
        interest_rate=Decimal("10"),
        duration=duration,
        repayment_cycle=cycle
    )
    loan = await system.loan_manager.create_loan(
        borrower_id=borrower.id,
        product_id=product.id,
        principal=principal,
        loan_officer_id="officer-1",
        branch_id="branch-1",
        submit=True
    )
    await system.loan_manager.approve_loan(loan.id, approved_by_id="manager-1")
    loan, installments = await system.loan_manager.disburse_loan(
        loan.id, disbursement_date=disbursement_date or date.today()
    )
    return borrower, loan, installments


@pytest.fixture
def loan_factory(system):
    """Coroutine function disbursing further loans on the shared system"""
    async def factory(**kwargs):
        return await make_active_loan(system, **kwargs)
    return factory


@pytest_asyncio.fixture
async def active_loan(system):
    """(borrower, loan, installments) for a freshly disbursed loan"""
    return await make_active_loan(system)
