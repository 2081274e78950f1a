import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinicpay.db")

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()

# Razorpay Configuration
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
# Accepting webhooks without a signing secret must be switched on explicitly
RAZORPAY_ALLOW_UNVERIFIED_WEBHOOKS = (
    os.getenv("RAZORPAY_ALLOW_UNVERIFIED_WEBHOOKS", "false").lower() == "true"
)
RAZORPAY_BASE_URL = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")
ONLINE_PAYMENT_FEE_PERCENT = os.getenv("ONLINE_PAYMENT_FEE_PERCENT", "2")

# Field-level encryption key for PHI/PII at rest: 64 hex chars (32 bytes).
# Generate with: python -c "import secrets; print(secrets.token_hex(32))"
FIELD_ENCRYPTION_KEY = os.getenv("FIELD_ENCRYPTION_KEY")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Audit trail
AUDIT_QUEUE_SIZE = int(os.getenv("AUDIT_QUEUE_SIZE", "1000"))

# Frontend base URL for CORS
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# CORS Configuration
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", f"{FRONTEND_URL},http://localhost:3000").split(",")
SECURITY_HEADERS_ENABLED = os.getenv("SECURITY_HEADERS_ENABLED", "true").lower() == "true"
