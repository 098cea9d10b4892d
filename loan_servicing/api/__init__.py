"""
Loan Servicing API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .dependencies import ServicingSystem, close_system, get_system
from .callbacks import router as callbacks_router
from .borrowers import router as borrowers_router
from .products import router as products_router
from .loans import router as loans_router
from .repayments import router as repayments_router
from .reconciliation import router as reconciliation_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the process-wide system (SMS client, storage) on shutdown"""
    yield
    await close_system()


def create_app(system: Optional[ServicingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Servicing system to serve; built from configuration on first
            request when omitted
    """
    app = FastAPI(
        title="Loan Servicing API",
        description="Microfinance loan servicing with mobile-money repayment reconciliation",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if system is not None:
        app.dependency_overrides[get_system] = lambda: system

    # Include routers
    app.include_router(callbacks_router, prefix="/mpesa", tags=["M-Pesa"])
    app.include_router(borrowers_router, prefix="/borrowers", tags=["Borrowers"])
    app.include_router(products_router, prefix="/products", tags=["Products"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(repayments_router, prefix="/repayments", tags=["Repayments"])
    app.include_router(reconciliation_router, prefix="/reconciliation", tags=["Reconciliation"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": "1.0.0"
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Servicing API",
            "version": "1.0.0",
            "description": "Microfinance loan servicing",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "mpesa_callback": "/mpesa/callback",
                "borrowers": "/borrowers",
                "products": "/products",
                "loans": "/loans",
                "repayments": "/repayments",
                "reconciliation": "/reconciliation",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_servicing.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
