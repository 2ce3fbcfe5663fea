import os
from dotenv import load_dotenv

# Load .env from the project root
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./coupon_engine.db")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_STAGE = ENV_NORMALIZED in {"stage", "staging", "homolog"}
IS_PROD = ENV_NORMALIZED in {"prod", "production"}

ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "").strip()

# CORS
_cors_env = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and IS_DEV:
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

# Money; stored amounts keep MONEY_SCALE decimal places
MONEY_SCALE = 2
CURRENCY_MINOR_UNITS = int(os.getenv("CURRENCY_MINOR_UNITS", "2"))

# Redemption commit
REDEMPTION_COMMIT_MODE = os.getenv("REDEMPTION_COMMIT_MODE", "transactional").strip().lower()
if REDEMPTION_COMMIT_MODE not in {"transactional", "saga"}:
    REDEMPTION_COMMIT_MODE = "transactional"

# 0 = retry until the compensation succeeds
COMPENSATION_MAX_ATTEMPTS = int(os.getenv("COMPENSATION_MAX_ATTEMPTS", "0"))
COMPENSATION_BASE_DELAY_SECONDS = float(os.getenv("COMPENSATION_BASE_DELAY_SECONDS", "0.05"))
COMPENSATION_MAX_DELAY_SECONDS = float(os.getenv("COMPENSATION_MAX_DELAY_SECONDS", "2.0"))

# Coupon codes
COUPON_CODE_RANDOM_BYTES = int(os.getenv("COUPON_CODE_RANDOM_BYTES", "4"))
COUPON_CODE_MAX_ATTEMPTS = int(os.getenv("COUPON_CODE_MAX_ATTEMPTS", "10"))
