from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from dotenv import load_dotenv
import time

# Load environment variables
load_dotenv()

from .config.settings import settings
from .exceptions import ConfigurationError
from .routes.payment_routes import router as payment_router
from .routes.checkout_routes import router as checkout_router
from .services.checkout_service import checkout_service

# Create logs directory if it doesn't exist
log_dir = Path("logs")
log_dir.mkdir(exist_ok=True)

# Configure logging on the package logger so every storefront module inherits it
logger = logging.getLogger("storefront")
logger.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

# Create formatters
formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

if not logger.handlers:
    # File handler for app.log
    file_handler = RotatingFileHandler(
        'logs/app.log',
        maxBytes=10485760,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.validate_bakong_config():
        logger.warning("Bakong merchant identity not fully set - KHQR generation will fail")
    if not settings.validate_verification_config():
        logger.warning("Bakong API credentials not set - payment verification will fail")
    yield
    # Stop every countdown and poll loop still running
    await checkout_service.shutdown()
    logger.info("Payment sessions shut down")

# Initialize FastAPI app
app = FastAPI(
    debug=settings.DEBUG,
    title="Coffee Storefront API",
    description="Checkout with cash-on-delivery and Bakong KHQR payments",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(f"Incoming request: {request.method} {request.url}")

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"Request error: {str(e)}")
        raise

    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    logger.info(f"Completed request: {request.method} {request.url} - Status: {response.status_code} - Time: {process_time:.4f}s")

    return response

# Include routers
app.include_router(payment_router, prefix="/api/v1")
app.include_router(checkout_router, prefix="/api/v1")

@app.get("/api/v1")
async def root():
    """API index"""
    return {
        "message": "Coffee Storefront API is running",
        "version": "1.0.0",
        "endpoints": {
            "generate_khqr": "POST /api/v1/bakong/generate-khqr",
            "verify_payment": "POST /api/v1/bakong/verify",
            "bakong_status": "GET /api/v1/bakong/status",
            "khqr_payment": "GET /api/v1/bakong/payments/{md5}",
            "checkout": "POST /api/v1/checkout",
            "bakong_checkout": "GET /api/v1/checkout/{checkout_id}/bakong",
            "get_order": "GET /api/v1/checkout/orders/{order_id}"
        }
    }

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "coffee-storefront"}

# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail, "status_code": exc.status_code})

@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error: {exc}")
    return JSONResponse(status_code=500, content={"error": "Payment provider is not configured", "detail": str(exc)})

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "detail": str(exc)})

if __name__ == "__main__":
    import uvicorn
    logger.info("Starting Coffee Storefront API server")
    uvicorn.run(
        "storefront.app:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG
    )
