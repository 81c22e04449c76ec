"""
Savings Group API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import (
    SavingsError, ValidationError, StateConflictError, NotFoundError, IntegrityError
)
from ..group import SavingsGroup
from ..config import get_config
from ..logging_config import get_logger, log_action, setup_logging
from .dependencies import get_savings_group
from .rules import router as rules_router
from .members import router as members_router
from .loans import router as loans_router
from .contributions import router as contributions_router
from .penalties import router as penalties_router


logger = get_logger("core_savings.api")


def status_for(error: SavingsError) -> int:
    """HTTP status for a domain error"""
    if isinstance(error, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, StateConflictError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def savings_error_handler(request: Request, exc: SavingsError) -> JSONResponse:
    code = status_for(exc)
    log_action(
        logger, "error" if isinstance(exc, IntegrityError) or code >= 500 else "warning",
        f"{request.method} {request.url.path} failed: {exc.message}",
        action="api_error", resource=request.url.path,
        extra={"code": exc.error_code, "status": code}
    )
    return JSONResponse(status_code=code, content=exc.to_dict())


def create_app(group: Optional[SavingsGroup] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        group: SavingsGroup to serve; built from configuration on first request when omitted
    """
    app = FastAPI(
        title="Savings Group API",
        description="Member savings, micro-loans, interest sharing and penalties",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SavingsError, savings_error_handler)

    if group is not None:
        app.dependency_overrides[get_savings_group] = lambda: group

    app.include_router(rules_router, prefix="/rules", tags=["Rules"])
    app.include_router(members_router, prefix="/members", tags=["Members"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(contributions_router, prefix="/contributions", tags=["Contributions"])
    app.include_router(penalties_router, prefix="/penalties", tags=["Penalties"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "core_savings_api",
            "version": __version__
        }

    @app.get("/integrity")
    def verify_integrity(system: SavingsGroup = Depends(get_savings_group)):
        """Run every ledger and audit chain check"""
        return system.verify_integrity()

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Savings Group API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "integrity": "/integrity",
                "rules": "/rules",
                "members": "/members",
                "loans": "/loans",
                "contributions": "/contributions",
                "penalties": "/penalties"
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server with settings from configuration"""
    settings = get_config()
    setup_logging(settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
    uvicorn.run(
        "core_savings.api:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level=settings.log_level.lower()
    )
