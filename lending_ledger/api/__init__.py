"""
Lending Ledger API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .ledger import router as ledger_router
from .deposits import router as deposits_router
from .lending import router as lending_router
from .jobs import router as jobs_router
from .history import router as history_router
from .. import __version__
from ..config import get_config
from ..errors import LedgerError
from ..logging_config import get_logger, setup_logging


logger = get_logger("lending_ledger.api")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lending Ledger API",
        description="Double-entry ledger with term loan lifecycle scheduling",
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

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    app.include_router(ledger_router, prefix="/ledger", tags=["Ledger"])
    app.include_router(deposits_router, prefix="/deposits", tags=["Deposits"])
    app.include_router(lending_router, prefix="/lending", tags=["Lending"])
    app.include_router(jobs_router, prefix="/jobs", tags=["Jobs"])
    app.include_router(history_router, prefix="/history", tags=["History"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_ledger_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Lending Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "ledger": "/ledger",
                "deposits": "/deposits",
                "lending": "/lending",
                "jobs": "/jobs",
                "history": "/history"
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "lending_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        workers=config.api_workers if not debug else 1,
        log_level=config.log_level.lower()
    )
