import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Query, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import uvicorn

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from marketplace_engine import __version__, config
from marketplace_engine.core.database import PostgresStore, close_connection_pool
from marketplace_engine.core.exceptions import (
    ConfigurationError,
    ConflictError,
    DuplicateDesignError,
    EngineError,
    LedgerArithmeticError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from marketplace_engine.core.notifications import NotificationDispatcher
from marketplace_engine.core.storage import ImageStore
from marketplace_engine.core.utils import retry_storage
from marketplace_engine.models.api import (
    CreateListingRequest,
    ErrorResponse,
    HealthResponse,
    PayoutRunRequest,
    PriceQuoteRequest,
    PriceUpdateRequest,
    RecordSaleRequest,
    ReverseSaleRequest,
)
from marketplace_engine.models.catalog import DesignSubmission, PriceQuote, ProductListing
from marketplace_engine.models.ledger import CommissionTier, DesignerEarningsSummary, PayoutRun, SaleRecord
from marketplace_engine.models.similarity import DuplicateCheckResult
from marketplace_engine.services.duplicate_gate import DuplicateGate
from marketplace_engine.services.ledger import SaleLedger
from marketplace_engine.services.listings import ListingService
from marketplace_engine.services.payouts import PayoutAggregator
from marketplace_engine.services.pricing import PricingCalculator
from marketplace_engine.services.tiers import TierTable

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


class EngineServices:
    """Every engine component wired to one store."""

    def __init__(self, store, image_store=None, notifier=None, pricing_table=None):
        self.store = store
        self.image_store = image_store
        self.gate = DuplicateGate(store, image_store=image_store)
        self.calculator = PricingCalculator(pricing_table)
        self.listings = ListingService(store, self.calculator)
        self.ledger = SaleLedger(store, notifier=notifier)
        self.payouts = PayoutAggregator(store, notifier=notifier)


# Global service container
services: Optional[EngineServices] = None


def build_services() -> EngineServices:
    return EngineServices(
        store=PostgresStore(),
        image_store=ImageStore(),
        notifier=NotificationDispatcher(),
        pricing_table=config.load_pricing_table(),
    )


def get_services() -> EngineServices:
    global services
    if services is None:
        services = build_services()
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting Designer Marketplace Engine API")
    try:
        engine = get_services()
        if engine.store.check_connection():
            logger.info("Postgres connection verified")
        else:
            logger.warning("Database connection check failed")
    except ConfigurationError as e:
        logger.error("Failed to initialize application", error=str(e))
        raise

    yield

    logger.info("Shutting down Designer Marketplace Engine API")
    close_connection_pool()


app = FastAPI(
    title="Designer Marketplace Engine API",
    description="Duplicate-design gate, pricing, commission tiers, sale ledger and payouts for a furniture marketplace",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    responses={
        404: {"model": ErrorResponse, "description": "Not Found"},
        409: {"model": ErrorResponse, "description": "Conflict"},
        422: {"model": ErrorResponse, "description": "Validation Error"},
        500: {"model": ErrorResponse, "description": "Internal Server Error"},
        503: {"model": ErrorResponse, "description": "Storage Unavailable"},
    }
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, error: str, exc: EngineError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(ErrorResponse(error=error, message=exc.message, details=exc.details or None)),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "validation_error", exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, "not_found", exc)


@app.exception_handler(DuplicateDesignError)
async def duplicate_design_handler(request, exc: DuplicateDesignError):
    return _error_response(status.HTTP_409_CONFLICT, "duplicate_design", exc)


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return _error_response(status.HTTP_409_CONFLICT, "conflict", exc)


@app.exception_handler(StorageError)
async def storage_error_handler(request, exc: StorageError):
    logger.error("Storage unavailable", url=str(request.url), method=request.method, error=exc.message)
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "storage_unavailable", exc)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request, exc: ConfigurationError):
    logger.error("Configuration error", url=str(request.url), error=exc.message, details=exc.details)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "configuration_error", exc)


@app.exception_handler(LedgerArithmeticError)
async def ledger_arithmetic_handler(request, exc: LedgerArithmeticError):
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "ledger_arithmetic_error", exc)


@app.get("/", response_model=dict)
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Designer Marketplace Engine API",
        "version": __version__,
        "docs_url": "/docs",
        "health_url": "/health",
    }


@app.get("/health", response_model=HealthResponse)
def health_check(engine: EngineServices = Depends(get_services)):
    """Health check endpoint with database and image storage status."""
    db_healthy = engine.store.check_connection()
    storage_health = engine.image_store.health_check() if engine.image_store else {}

    components = {
        "database": "healthy" if db_healthy else "unhealthy",
        "storage_health": storage_health,
    }
    return HealthResponse(
        status="healthy" if db_healthy else "degraded",
        version=__version__,
        components=components,
    )


# Duplicate gate

async def _read_upload(file: UploadFile) -> bytes:
    data = await file.read()
    if not data:
        raise ValidationError("Uploaded image is empty")
    if len(data) > config.MAX_IMAGE_BYTES:
        raise ValidationError("Image exceeds maximum allowed size",
                              details={"size": len(data), "max_size": config.MAX_IMAGE_BYTES})
    return data


@app.post("/designs/check-duplicate", response_model=DuplicateCheckResult)
async def check_duplicate(
    file: UploadFile = File(..., description="Candidate design image"),
    product_id: Optional[str] = Form(None, description="Index the fingerprint under this product if unique"),
    engine: EngineServices = Depends(get_services),
):
    """Compare a candidate design image against every accepted design."""
    data = await _read_upload(file)
    return await run_in_threadpool(retry_storage, engine.gate.check_duplicate, data, product_id=product_id)


@app.post("/designs", response_model=DesignSubmission, status_code=status.HTTP_201_CREATED)
async def submit_design(
    designer_id: str = Form(...),
    product_id: str = Form(...),
    image_reference: str = Form(..., description="gs:// or http(s):// location of the design image"),
    file: Optional[UploadFile] = File(None, description="Image content; fetched from image_reference when omitted"),
    engine: EngineServices = Depends(get_services),
):
    """Submit a design; near-duplicates of accepted designs are rejected with 409."""
    data = await _read_upload(file) if file is not None else None
    return await run_in_threadpool(
        retry_storage, engine.gate.submit_design, designer_id, product_id, image_reference, image_bytes=data
    )


# Pricing and listings

@app.post("/pricing/quote", response_model=PriceQuote)
def quote_price(body: PriceQuoteRequest, engine: EngineServices = Depends(get_services)):
    return engine.calculator.compute_price(
        body.category,
        body.dimensions,
        override_base_price=body.override_base_price,
        override_selling_price=body.override_selling_price,
    )


@app.post("/listings", response_model=ProductListing, status_code=status.HTTP_201_CREATED)
def create_listing(body: CreateListingRequest, engine: EngineServices = Depends(get_services)):
    return retry_storage(
        engine.listings.create_listing,
        body.designer_id,
        body.category,
        body.dimensions,
        name=body.name,
        product_id=body.product_id,
    )


@app.put("/listings/{product_id}/price", response_model=ProductListing)
def update_listing_price(product_id: str, body: PriceUpdateRequest, engine: EngineServices = Depends(get_services)):
    """Admin price override; rejected once the listing is approved."""
    return retry_storage(
        engine.listings.update_price,
        product_id,
        body.base_price,
        auto_apply_markup=body.auto_apply_markup,
        selling_price=body.selling_price,
        changed_by=body.changed_by,
        reason=body.reason,
    )


@app.post("/listings/{product_id}/approve", response_model=ProductListing)
def approve_listing(product_id: str, engine: EngineServices = Depends(get_services)):
    return retry_storage(engine.listings.approve_listing, product_id)


@app.post("/listings/{product_id}/reject", response_model=ProductListing)
def reject_listing(product_id: str, engine: EngineServices = Depends(get_services)):
    return retry_storage(engine.listings.reject_listing, product_id)


# Commission tiers and ledger

@app.get("/tiers/resolve", response_model=CommissionTier)
def resolve_tier(
    cumulative_sales: Optional[str] = Query(None, description="Resolve for an explicit sales volume"),
    designer_id: Optional[str] = Query(None, description="Resolve for a designer's recorded volume"),
    engine: EngineServices = Depends(get_services),
):
    if designer_id:
        return retry_storage(engine.ledger.current_tier, designer_id)
    if cumulative_sales is None:
        raise ValidationError("Either cumulative_sales or designer_id is required")

    def _load():
        with engine.store.transaction() as tx:
            return tx.load_commission_tiers()

    return TierTable.from_rows(retry_storage(_load)).resolve(cumulative_sales)


@app.post("/sales", response_model=SaleRecord, status_code=status.HTTP_201_CREATED)
def record_sale(body: RecordSaleRequest, engine: EngineServices = Depends(get_services)):
    """Record a completed sale. Retries with the same sale_reference return the original record."""
    return retry_storage(
        engine.ledger.record_sale,
        body.product_id,
        body.sale_price,
        sale_reference=body.sale_reference,
        sale_date=body.sale_date,
    )


@app.post("/sales/{record_id}/reverse", response_model=SaleRecord, status_code=status.HTTP_201_CREATED)
def reverse_sale(record_id: str, body: ReverseSaleRequest, engine: EngineServices = Depends(get_services)):
    return retry_storage(engine.ledger.reverse_sale, record_id, reason=body.reason)


@app.get("/designers/{designer_id}/earnings", response_model=DesignerEarningsSummary)
def designer_earnings(designer_id: str, engine: EngineServices = Depends(get_services)):
    return retry_storage(engine.ledger.designer_summary, designer_id)


@app.post("/payouts/run", response_model=PayoutRun)
def run_payouts(body: PayoutRunRequest, engine: EngineServices = Depends(get_services)):
    """Settle unpaid earnings for the period; per-designer outcomes are in results."""
    return engine.payouts.run_payout_batch(body.period)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error("Unhandled exception",
                 url=str(request.url), method=request.method, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_server_error", "message": "An unexpected error occurred"}
    )


if __name__ == "__main__":
    uvicorn.run(
        "marketplace_engine.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", 8000)),
        reload=os.getenv("DEBUG", "false").lower() == "true",
        log_config=None,  # We handle logging with structlog
    )
