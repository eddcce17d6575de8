"""
Loan Ledger API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .deps import LedgerSystem
from .borrowers import router as borrowers_router
from .loans import router as loans_router
from .audit import router as audit_router
from .reports import router as reports_router, sweep_router
from .. import __version__


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The ledger system is built from configuration unless one is given. It is
    started and stopped with the application's lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.system.start()
        try:
            yield
        finally:
            app.state.system.stop()

    app = FastAPI(
        title="Loan Ledger API",
        description="Borrowers, loans, payments and overdue penalties with a hash-chained audit trail",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system or LedgerSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(borrowers_router, prefix="/borrowers", tags=["Borrowers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(audit_router, prefix="/audit-logs", tags=["Audit"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])
    app.include_router(sweep_router, prefix="/sweep", tags=["Penalties"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint; reports a blocked ledger as unavailable"""
        store = app.state.system.engine.store
        healthy = store.loaded and store.last_error is None
        body = {
            "status": "healthy" if healthy else "unavailable",
            "service": "loan_ledger_api",
            "version": __version__,
            "account_id": app.state.system.engine.account_id,
        }
        if store.last_error is not None:
            body["error"] = store.last_error.message
            body["error_type"] = type(store.last_error).__name__
        return body

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "borrowers": "/borrowers",
                "loans": "/loans",
                "audit-logs": "/audit-logs",
                "reports": "/reports",
                "sweep": "/sweep",
            }
        }

    return app
