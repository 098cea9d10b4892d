"""
Loan product endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import ServicingSystem, get_system, to_http_exception
from .schemas import CreateProductRequest, product_response
from ..exceptions import ServicingError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(
    request: CreateProductRequest,
    system: ServicingSystem = Depends(get_system)
):
    """Define a loan product"""
    try:
        product = await system.loan_manager.create_product(**request.model_dump())
    except ServicingError as e:
        raise to_http_exception(e)
    return product_response(product)


@router.get("/{product_id}")
async def get_product(
    product_id: str,
    system: ServicingSystem = Depends(get_system)
):
    """Get loan product details"""
    product = await system.loan_manager.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product_response(product)
