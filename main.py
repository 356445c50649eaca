from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List, Optional
import logging
import structlog
import time
from contextlib import asynccontextmanager

from config import Settings, get_settings
from exceptions import (
    AlreadyExists,
    ChangeUnrepresentable,
    InsufficientFunds,
    InsufficientStock,
    InvalidAmount,
    NotFound,
    Unauthorized,
    VendingError,
)
from models import (
    AccountCreateRequest,
    AccountUpdateRequest,
    AccountResponse,
    BuyRequest,
    DepositRequest,
    ErrorResponse,
    HealthResponse,
    ProductCreateRequest,
    ProductResponse,
    ProductUpdateRequest,
    PurchaseResponse,
)
from repositories import get_account_repository, get_product_repository
from services import (
    AccountDirectory,
    AccountLedger,
    Catalog,
    TransactionEngine,
    get_account_directory,
    get_account_ledger,
    get_catalog,
    get_transaction_engine,
)

settings = get_settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

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

# Transport status for each core error kind
ERROR_STATUS_CODES = {
    Unauthorized: status.HTTP_401_UNAUTHORIZED,
    NotFound: status.HTTP_404_NOT_FOUND,
    AlreadyExists: status.HTTP_409_CONFLICT,
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    InsufficientStock: status.HTTP_400_BAD_REQUEST,
    InsufficientFunds: status.HTTP_402_PAYMENT_REQUIRED,
    ChangeUnrepresentable: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_code_for(exc: VendingError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Rate limiting
limiter = Limiter(key_func=get_remote_address)


def rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(
        "Starting Vending Machine API",
        coin_denominations=settings.coin_denominations
    )
    yield
    # Shutdown
    logger.info("Shutting down Vending Machine API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Vending machine with coin deposits, seller-owned products and exact change",
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

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
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
def get_caller_id(request: Request) -> Optional[str]:
    """Authenticated principal, supplied out-of-band in a request header."""
    return request.headers.get(get_settings().user_id_header) or None


def get_directory(account_repo=Depends(get_account_repository)) -> AccountDirectory:
    return get_account_directory(account_repo)


def get_ledger(account_repo=Depends(get_account_repository)) -> AccountLedger:
    return get_account_ledger(account_repo)


def get_catalog_service(
    product_repo=Depends(get_product_repository),
    account_repo=Depends(get_account_repository)
) -> Catalog:
    return get_catalog(product_repo, account_repo)


def get_engine(
    account_repo=Depends(get_account_repository),
    product_repo=Depends(get_product_repository)
) -> TransactionEngine:
    return get_transaction_engine(account_repo, product_repo)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get catalog statistics"
)
def health_check(
    account_repo=Depends(get_account_repository),
    product_repo=Depends(get_product_repository)
):
    return HealthResponse(
        status="healthy",
        accounts_count=account_repo.count(),
        products_count=product_repo.count(),
        coin_denominations=get_settings().coin_denominations
    )

# Accounts
@app.post(
    "/users",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create User",
    responses={409: {"description": "Account id already taken"}}
)
def create_user(
    account_request: AccountCreateRequest,
    directory: AccountDirectory = Depends(get_directory)
):
    return AccountResponse.from_account(directory.create_account(account_request))


@app.get("/users/{user_id}", response_model=AccountResponse, summary="Get User")
def get_user(user_id: str, directory: AccountDirectory = Depends(get_directory)):
    return AccountResponse.from_account(directory.get_account(user_id))


@app.put(
    "/users/{user_id}",
    response_model=AccountResponse,
    summary="Update User",
    description="Replace the caller's own username and role; the balance is kept"
)
def update_user(
    user_id: str,
    account_request: AccountUpdateRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    directory: AccountDirectory = Depends(get_directory)
):
    return AccountResponse.from_account(directory.update_account(caller_id, user_id, account_request))


@app.delete("/users/{user_id}", response_model=AccountResponse, summary="Delete User")
def delete_user(
    user_id: str,
    caller_id: Optional[str] = Depends(get_caller_id),
    directory: AccountDirectory = Depends(get_directory)
):
    return AccountResponse.from_account(directory.delete_account(caller_id, user_id))

# Products
@app.get("/products", response_model=List[ProductResponse], summary="List Products")
def list_products(catalog: Catalog = Depends(get_catalog_service)):
    return [ProductResponse.from_product(product) for product in catalog.list_products()]


@app.get("/products/{product_id}", response_model=ProductResponse, summary="Get Product")
def get_product(product_id: str, catalog: Catalog = Depends(get_catalog_service)):
    return ProductResponse.from_product(catalog.get_product(product_id))


@app.post(
    "/products",
    response_model=ProductResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Product",
    description="Create a product; the calling seller becomes its owner"
)
def create_product(
    product_request: ProductCreateRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    catalog: Catalog = Depends(get_catalog_service)
):
    return ProductResponse.from_product(catalog.create_product(caller_id, product_request))


@app.put(
    "/products/{product_id}",
    response_model=ProductResponse,
    summary="Update Product",
    description="Replace a product's name, cost and stock (owner only)"
)
def update_product(
    product_id: str,
    product_request: ProductUpdateRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    catalog: Catalog = Depends(get_catalog_service)
):
    return ProductResponse.from_product(catalog.update_product(caller_id, product_id, product_request))


@app.delete("/products/{product_id}", response_model=ProductResponse, summary="Delete Product")
def delete_product(
    product_id: str,
    caller_id: Optional[str] = Depends(get_caller_id),
    catalog: Catalog = Depends(get_catalog_service)
):
    return ProductResponse.from_product(catalog.delete_product(caller_id, product_id))

# Coins and purchases
@app.post(
    "/deposit",
    response_model=AccountResponse,
    summary="Deposit Coin",
    description="Add one accepted coin to the buyer's balance. Takes a JSON body `{\"amount\": 20}`; form-encoded bodies are not accepted",
    responses={
        400: {"description": "Not an accepted denomination"},
        401: {"description": "Missing caller or caller is not a buyer"},
        429: {"description": "Rate limit exceeded"}
    }
)
@limiter.limit(rate_limit)
def deposit(
    request: Request,
    deposit_request: DepositRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    ledger: AccountLedger = Depends(get_ledger)
):
    return AccountResponse.from_account(ledger.deposit(caller_id, deposit_request.amount))


@app.post(
    "/buy",
    response_model=PurchaseResponse,
    summary="Buy Product",
    description="Buy units of one product; the remaining balance is returned as change. Takes a JSON body `{\"productId\": ..., \"amount\": 1}`; form-encoded bodies are not accepted",
    responses={
        400: {"description": "Insufficient product quantity"},
        401: {"description": "Missing caller or caller is not a buyer"},
        402: {"description": "Insufficient funds"},
        404: {"description": "Product not found"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Change could not be made"}
    }
)
@limiter.limit(rate_limit)
def buy(
    request: Request,
    buy_request: BuyRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    engine: TransactionEngine = Depends(get_engine)
):
    receipt = engine.buy(caller_id, buy_request.productId, buy_request.amount)
    return PurchaseResponse.from_receipt(receipt)


@app.post("/reset", response_model=AccountResponse, summary="Reset Deposit")
@limiter.limit(rate_limit)
def reset(
    request: Request,
    caller_id: Optional[str] = Depends(get_caller_id),
    ledger: AccountLedger = Depends(get_ledger)
):
    return AccountResponse.from_account(ledger.reset(caller_id))

# Exception handlers
@app.exception_handler(VendingError)
async def vending_error_handler(request: Request, exc: VendingError):
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request rejected",
        error_code=exc.error_code,
        detail=exc.detail,
        status_code=status_code,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=exc.error_code
        ).model_dump(mode="json")
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=str(exc.detail),
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
def root():
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
