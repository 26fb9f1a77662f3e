import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tradie.db")

# Identity provider (Firebase) project used to verify web session tokens
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# TradieConnect Configuration
TRADIECONNECT_API_URL = os.getenv("TRADIECONNECT_API_URL", "https://admin.taskforce.com.au")
TRADIECONNECT_AUTH_URL = os.getenv("TRADIECONNECT_AUTH_URL", "https://auth.taskforce.com.au")
# 32 character key shared with TradieConnect (AES-256)
TRADIECONNECT_ENCRYPT_KEY = os.getenv("TRADIECONNECT_ENCRYPT_KEY", "")
TRADIECONNECT_TIMEOUT_SECONDS = float(os.getenv("TRADIECONNECT_TIMEOUT_SECONDS", "30"))
# Where TradieConnect sends the user back to after SSO (relative to FRONTEND_URL)
TRADIECONNECT_DEFAULT_REFERER = os.getenv("TRADIECONNECT_DEFAULT_REFERER", "/dashboard/integrations")

# Outgoing webhook delivery
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "30"))
WEBHOOK_DEFAULT_MAX_RETRIES = int(os.getenv("WEBHOOK_DEFAULT_MAX_RETRIES", "3"))
WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS = int(os.getenv("WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS", "60"))
WEBHOOK_USER_AGENT = os.getenv("WEBHOOK_USER_AGENT", "TradieApp-Webhooks/1.0")
