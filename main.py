from fastapi import FastAPI, HTTPException, Request, Response, Depends, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import logging
import structlog
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional

from models import ResetRequest, ChargeRequest, ChargeResult, BalanceResponse, ErrorResponse, HealthResponse
from services import BalanceService, get_balance_service
from repositories import LedgerStore, get_ledger_store, close_ledger_store
from exceptions import LedgerError, InvalidAccountError, InvalidChargeError, StoreUnavailableError
from config import Settings, get_settings

settings = get_settings()


def configure_logging(settings: Settings) -> None:
    """Configure structured logging on top of stdlib logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=settings.log_level.upper(),
    )
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.log_format == "text"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging(settings)
logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

ERROR_STATUS = {
    InvalidAccountError: status.HTTP_400_BAD_REQUEST,
    InvalidChargeError: status.HTTP_400_BAD_REQUEST,
    StoreUnavailableError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_response(status_code: int, detail: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, error_code=error_code).model_dump(mode="json")
    )


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Charge Ledger API", ledger_backend=settings.ledger_backend)
    yield
    # Shutdown
    await close_ledger_store()
    logger.info("Shutting down Charge Ledger API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Per-account balances with atomic check-and-deduct charges",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.debug(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(store: LedgerStore = Depends(get_ledger_store)) -> BalanceService:
    return get_balance_service(
        store,
        default_balance=settings.default_balance,
        timeout=settings.store_timeout_seconds
    )

rate_limit = f"{settings.rate_limit_per_minute}/minute"

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and ledger store reachability"
)
async def health_check(store: LedgerStore = Depends(get_ledger_store)):
    reachable = await store.ping()
    if not reachable:
        logger.error("Health check failed", ledger_backend=settings.ledger_backend)
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )
    return HealthResponse(
        status="healthy",
        store_backend=settings.ledger_backend,
        store_reachable=reachable
    )

@app.post(
    "/reset",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Reset Account",
    description="Set the account balance back to the default balance",
    responses={
        400: {"description": "Invalid account"},
        500: {"description": "Ledger store unavailable"}
    }
)
@limiter.limit(rate_limit)
async def reset_account(
    request: Request,
    reset_request: Optional[ResetRequest] = None,
    service: BalanceService = Depends(get_service)
):
    reset_request = reset_request or ResetRequest()
    await service.reset(reset_request.account)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@app.post(
    "/charge",
    response_model=ChargeResult,
    summary="Charge Account",
    description="Atomically deduct charges from the account if its balance covers them",
    responses={
        200: {"description": "Charge authorized"},
        400: {"description": "Invalid account or charge amount"},
        403: {"description": "Insufficient balance"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Ledger store unavailable"}
    }
)
@limiter.limit(rate_limit)
async def charge_account(
    request: Request,
    charge_request: Optional[ChargeRequest] = None,
    service: BalanceService = Depends(get_service)
):
    charge_request = charge_request or ChargeRequest()
    result = await service.charge(charge_request.account, charge_request.charges)

    if not result.authorized:
        return error_response(
            status.HTTP_403_FORBIDDEN,
            "Insufficient balance",
            "INSUFFICIENT_BALANCE"
        )

    return result

@app.get(
    "/balance",
    response_model=BalanceResponse,
    summary="Get Balance",
    description="Read the current balance of an account",
    responses={404: {"description": "Account has never been reset"}}
)
async def read_balance(
    account: str = Query(default=settings.default_account, max_length=256),
    service: BalanceService = Depends(get_service)
):
    balance = await service.get_balance(account)
    if balance is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return BalanceResponse(account=account, balance=balance)

# Global exception handlers
@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Ledger request failed",
        error=exc.message,
        error_code=exc.code,
        url=str(request.url),
        method=request.method
    )
    return error_response(status_code, exc.message, exc.code)

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )
    return error_response(500, "Internal server error", "INTERNAL_ERROR")

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
