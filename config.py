import os
import sys

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation via prefixes
# ====================================================================================
# Every variable is read with the environment prefix:
#   - PROD: PROD_DATABASE_URL, PROD_PANEL_API_TOKEN, ...
#   - STAGE: STAGE_DATABASE_URL, STAGE_PANEL_API_TOKEN, ...
#   - LOCAL: LOCAL_DATABASE_URL, LOCAL_PANEL_API_TOKEN, ...
#
# A STAGE process can never pick up PROD_* credentials by accident.
# Runtime-tunable values (referral percents, trial, cron) live in the
# system_settings table, see database.get_system_config().
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Read an environment variable with the environment prefix.

    Example:
        env("DATABASE_URL") -> value of STAGE_DATABASE_URL when APP_ENV=stage
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


def _warn_missing(key: str, consequence: str) -> None:
    print(f"WARNING: {APP_ENV.upper()}_{key} is not set - {consequence}", file=sys.stderr)


# Direct (unprefixed) usage of secrets is forbidden
_direct_usage_vars = ["DATABASE_URL", "PANEL_API_TOKEN", "BOT_TOKEN", "YOOKASSA_SECRET_KEY"]
for var in _direct_usage_vars:
    if os.getenv(var):
        print(f"ERROR: Direct usage of {var} is FORBIDDEN!", file=sys.stderr)
        print(f"ERROR: Use {APP_ENV.upper()}_{var} instead (via env('{var}'))", file=sys.stderr)
        sys.exit(1)

# ====================================================================================
# STORAGE
# ====================================================================================
DATABASE_URL = env("DATABASE_URL")
REDIS_URL = env("REDIS_URL", default="")

SESSION_TTL_SECONDS = int(env("SESSION_TTL_SECONDS", default="86400"))

# ====================================================================================
# VPN PANEL (Remnawave REST API)
# ====================================================================================
PANEL_API_URL = env("PANEL_API_URL")
PANEL_API_TOKEN = env("PANEL_API_TOKEN")
PANEL_API_TIMEOUT = float(env("PANEL_API_TIMEOUT", default="10.0"))
PANEL_ENABLED = bool(PANEL_API_URL and PANEL_API_TOKEN)
if not PANEL_ENABLED:
    _warn_missing("PANEL_API_URL/PANEL_API_TOKEN", "entitlements cannot be provisioned")

# ====================================================================================
# TELEGRAM NOTIFICATIONS (optional)
# ====================================================================================
BOT_TOKEN = env("BOT_TOKEN")
if not BOT_TOKEN:
    _warn_missing("BOT_TOKEN", "telegram notifications are disabled")

# ====================================================================================
# E-MAIL (optional, auto broadcast channel "email")
# ====================================================================================
SMTP_HOST = env("SMTP_HOST")
SMTP_PORT = int(env("SMTP_PORT", default="587"))
SMTP_USER = env("SMTP_USER")
SMTP_PASSWORD = env("SMTP_PASSWORD")
SMTP_FROM = env("SMTP_FROM") or SMTP_USER
SMTP_USE_TLS = env("SMTP_USE_TLS", default="true").lower() == "true"
SMTP_ENABLED = bool(SMTP_HOST and SMTP_FROM)

# ====================================================================================
# PAYMENT GATEWAYS
# ====================================================================================
YOOKASSA_SHOP_ID = env("YOOKASSA_SHOP_ID")
YOOKASSA_SECRET_KEY = env("YOOKASSA_SECRET_KEY")
YOOKASSA_API_URL = env("YOOKASSA_API_URL") or "https://api.yookassa.ru/v3"

PLATEGA_MERCHANT_ID = env("PLATEGA_MERCHANT_ID")
PLATEGA_SECRET = env("PLATEGA_SECRET")
PLATEGA_API_URL = env("PLATEGA_API_URL") or "https://app.platega.io"
PLATEGA_PAYMENT_METHOD = int(env("PLATEGA_PAYMENT_METHOD", default="2"))

YOOMONEY_RECEIVER_WALLET = env("YOOMONEY_RECEIVER_WALLET")
YOOMONEY_NOTIFICATION_SECRET = env("YOOMONEY_NOTIFICATION_SECRET")

PUBLIC_APP_URL = env("PUBLIC_APP_URL", default="")

# ====================================================================================
# AUTO BROADCAST
# ====================================================================================
DEFAULT_AUTO_BROADCAST_CRON = "0 9 * * *"
AUTO_BROADCAST_CRON = env("AUTO_BROADCAST_CRON", default=DEFAULT_AUTO_BROADCAST_CRON)
AUTO_BROADCAST_ENABLED = env("AUTO_BROADCAST_ENABLED", default="true").lower() == "true"

# ====================================================================================
# HTTP API
# ====================================================================================
ADMIN_API_KEY = env("ADMIN_API_KEY")
if not ADMIN_API_KEY:
    _warn_missing("ADMIN_API_KEY", "admin endpoints reject every request")
HTTP_PORT = int(os.getenv("PORT") or env("HTTP_PORT") or "8080")

print(f"INFO: Config loaded for environment: {APP_ENV.upper()}", flush=True)
