import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import (
    models,  # noqa: F401
    models_audit,  # noqa: F401
    models_payment,  # noqa: F401
)
from .audit import audit_recorder
from .config import (
    ALLOWED_ORIGINS,
    RAZORPAY_ALLOW_UNVERIFIED_WEBHOOKS,
    RAZORPAY_WEBHOOK_SECRET,
    SECURITY_HEADERS_ENABLED,
)
from .database import Base, engine
from .domain.admin import router as admin_router
from .domain.payments import router as payments_router
from .security_headers import SecurityHeadersMiddleware

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    if not RAZORPAY_WEBHOOK_SECRET:
        if RAZORPAY_ALLOW_UNVERIFIED_WEBHOOKS:
            logger.warning("⚠️ Webhook signature verification DISABLED - unverified webhooks will be accepted")
        else:
            logger.warning("⚠️ RAZORPAY_WEBHOOK_SECRET not set - gateway webhooks will be rejected")

    audit_recorder.start()
    yield
    logger.info("Application shutting down...")
    audit_recorder.stop()


app = FastAPI(title="ClinicPay API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors from HTTPBearer to 401 authentication errors
    when the issue is with the Authorization header
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(
                f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
            )
            return JSONResponse(
                status_code=401,
                content={
                    "detail": "Not authenticated. Please provide a valid Bearer token in the Authorization header."
                },
            )

    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"success": False, "detail": jsonable_encoder(exc.errors())},
    )


if SECURITY_HEADERS_ENABLED:
    app.add_middleware(SecurityHeadersMiddleware, exclude_paths=["/health", "/docs", "/openapi.json"])
    logger.info("Security headers enabled")

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

app.include_router(payments_router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "healthy"}
