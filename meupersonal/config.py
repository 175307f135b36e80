import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./meupersonal.db")

# Security - the dev fallback is only tolerated outside production
SECRET_KEY = os.getenv("SECRET_KEY") or os.getenv("JWT_SECRET")
if not SECRET_KEY:
    if IS_PRODUCTION:
        raise RuntimeError("SECRET_KEY must be set in production")
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only
elif IS_PRODUCTION and len(SECRET_KEY) < 32:
    raise RuntimeError("SECRET_KEY must be at least 32 characters in production")

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
AUTH_COOKIE_NAME = "auth-token"
PASSWORD_RESET_MAX_AGE_SECONDS = int(os.getenv("PASSWORD_RESET_MAX_AGE_SECONDS", "3600"))

# Frontend base URL for redirects and e-mail links
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", FRONTEND_URL)

# Redis - used by cache, rate limiter and the ARQ worker
REDIS_URL = os.getenv("REDIS_URL")
CACHE_DEFAULT_TTL = int(os.getenv("CACHE_DEFAULT_TTL", "300"))
CACHE_MAX_MEMORY_ENTRIES = int(os.getenv("CACHE_MAX_MEMORY_ENTRIES", "1000"))

# Asaas payment gateway
ASAAS_API_KEY = os.getenv("ASAAS_API_KEY")
# "production" or "sandbox" - default to sandbox for safety
ASAAS_ENV = os.getenv("ASAAS_ENV", "sandbox").lower()
ASAAS_WEBHOOK_TOKEN = os.getenv("ASAAS_WEBHOOK_TOKEN")
ASAAS_TIMEOUT_SECONDS = float(os.getenv("ASAAS_TIMEOUT_SECONDS", "30"))

# Resend e-mail
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Meu Personal <noreply@meupersonal.com.br>")

# Booking lock scheduler
BOOKING_SCHEDULER_ENABLED = os.getenv("BOOKING_SCHEDULER_ENABLED", "false").lower() == "true"
BOOKING_SCHEDULER_INTERVAL_MINUTES = int(os.getenv("BOOKING_SCHEDULER_INTERVAL_MINUTES", "15"))
SCHEDULER_MAX_RETRIES = int(os.getenv("SCHEDULER_MAX_RETRIES", "2"))
SCHEDULER_RETRY_DELAY_SECONDS = float(os.getenv("SCHEDULER_RETRY_DELAY_SECONDS", "5"))

# Business rules
WELCOME_STUDENT_CREDITS = int(os.getenv("WELCOME_STUDENT_CREDITS", "5"))
CANCELLATION_WINDOW_HOURS = int(os.getenv("CANCELLATION_WINDOW_HOURS", "4"))
HIGH_QUANTITY_GRANT_THRESHOLD = 100
