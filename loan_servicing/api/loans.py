"""
Loan endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import ServicingSystem, get_system, to_http_exception
from .schemas import (
    CreateLoanRequest, ApproveLoanRequest, DisburseLoanRequest,
    loan_response, installment_response, summary_response
)
from ..exceptions import ServicingError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: ServicingSystem = Depends(get_system)
):
    """Originate a new loan from a product"""
    try:
        await system.borrower_manager.require_borrower(request.borrower_id)
        loan = await system.loan_manager.create_loan(
            borrower_id=request.borrower_id,
            product_id=request.product_id,
            principal=request.principal,
            loan_officer_id=request.loan_officer_id,
            branch_id=request.branch_id,
            submit=request.submit
        )
    except ServicingError as e:
        raise to_http_exception(e)
    return loan_response(loan)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """Get loan details"""
    loan = await system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan_response(loan)


@router.get("/{loan_id}/installments")
async def get_loan_installments(
    loan_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """Get the repayment schedule as stored"""
    if not await system.loan_manager.get_loan(loan_id):
        raise HTTPException(status_code=404, detail="Loan not found")
    installments = await system.installment_manager.get_installments(loan_id)
    return {
        "loan_id": loan_id,
        "installments": [installment_response(i) for i in installments],
    }


@router.get("/{loan_id}/summary")
async def get_loan_summary(
    loan_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """Get repayment position with display statuses"""
    try:
        summary = await system.loan_manager.get_loan_summary(loan_id)
    except ServicingError as e:
        raise to_http_exception(e)
    return summary_response(summary)


@router.post("/{loan_id}/submit")
async def submit_loan(
    loan_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """Submit a draft loan for approval"""
    try:
        loan = await system.loan_manager.submit_for_approval(loan_id)
    except ServicingError as e:
        raise to_http_exception(e)
    return loan_response(loan)


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    system: ServicingSystem = Depends(get_system)
):
    """Approve a pending loan"""
    try:
        loan = await system.loan_manager.approve_loan(loan_id, request.approved_by_id)
    except ServicingError as e:
        raise to_http_exception(e)
    return loan_response(loan)


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """Reject a pending or approved loan"""
    try:
        loan = await system.loan_manager.reject_loan(loan_id)
    except ServicingError as e:
        raise to_http_exception(e)
    return loan_response(loan)


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    system: ServicingSystem = Depends(get_system)
):
    """Disburse a loan and generate its repayment schedule"""
    try:
        loan, installments = await system.loan_manager.disburse_loan(
            loan_id=loan_id,
            disbursement_date=request.disbursement_date,
            repayment_cycle=request.repayment_cycle,
            approved_by_id=request.approved_by_id
        )
    except ServicingError as e:
        raise to_http_exception(e)

    return {
        "loan": loan_response(loan),
        "installments": [installment_response(i) for i in installments],
        "message": "Loan disbursed successfully"
    }


@router.post("/{loan_id}/refresh-overdue")
async def refresh_overdue(
    loan_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """Persist Overdue on past-due installments"""
    if not await system.loan_manager.get_loan(loan_id):
        raise HTTPException(status_code=404, detail="Loan not found")
    try:
        updated = await system.installment_manager.refresh_overdue(loan_id)
    except ServicingError as e:
        raise to_http_exception(e)
    return {"loan_id": loan_id, "updated": updated}
