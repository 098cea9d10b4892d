"""
Borrower endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import ServicingSystem, get_system, to_http_exception
from .schemas import CreateBorrowerRequest, borrower_response, loan_response
from ..exceptions import ServicingError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_borrower(
    request: CreateBorrowerRequest,
    system: ServicingSystem = Depends(get_system)
):
    """Register a borrower"""
    try:
        borrower = await system.borrower_manager.create_borrower(**request.model_dump())
    except ServicingError as e:
        raise to_http_exception(e)
    return borrower_response(borrower)


@router.get("/{borrower_id}")
async def get_borrower(
    borrower_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """Get borrower details"""
    borrower = await system.borrower_manager.get_borrower(borrower_id)
    if not borrower:
        raise HTTPException(status_code=404, detail="Borrower not found")
    return borrower_response(borrower)


@router.get("/{borrower_id}/loans")
async def get_borrower_loans(
    borrower_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """A borrower's loans, most recently issued first"""
    loans = await system.loan_manager.get_borrower_loans(borrower_id)
    return {"borrower_id": borrower_id, "loans": [loan_response(loan) for loan in loans]}
