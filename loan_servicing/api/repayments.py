"""
Repayment endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import ServicingSystem, get_system, to_http_exception
from .schemas import ManualRepaymentRequest, repayment_response, allocation_response
from ..repayments import RepaymentMethod
from ..exceptions import ServicingError


router = APIRouter()


@router.get("")
async def list_repayments(
    loan_id: str = Query(..., description="Loan whose repayment history to return"),
    system: ServicingSystem = Depends(get_system)
):
    """Repayment history for a loan, oldest first"""
    repayments = await system.repayment_ledger.get_loan_repayments(loan_id)
    return {
        "loan_id": loan_id,
        "count": len(repayments),
        "repayments": [repayment_response(r) for r in repayments],
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_repayment(
    request: ManualRepaymentRequest,
    system: ServicingSystem = Depends(get_system)
):
    """Record a repayment collected by staff"""
    if request.method == RepaymentMethod.MOBILE_MONEY:
        raise HTTPException(
            status_code=400,
            detail="Mobile money repayments arrive through the payment callback"
        )
    try:
        result = await system.allocation_engine.record_manual_repayment(
            loan_id=request.loan_id,
            amount=request.amount,
            method=request.method,
            collected_by_id=request.collected_by_id,
            reference=request.reference
        )
    except ServicingError as e:
        raise to_http_exception(e)
    return allocation_response(result)
