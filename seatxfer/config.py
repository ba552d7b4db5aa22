import os
import sys


# ----------------------------
# Database
# ----------------------------
def _database_url_from_parts() -> str | None:
    host = os.environ.get("PGHOST")
    user = os.environ.get("PGUSER")
    password = os.environ.get("PGPASSWORD")
    database = os.environ.get("PGDATABASE")
    port = os.environ.get("PGPORT", "5432")
    if host and user and password and database:
        return f"postgresql://{user}:{password}@{host}:{port}/{database}"
    return None


DATABASE_URL = os.environ.get("DATABASE_URL") or _database_url_from_parts()

if DATABASE_URL is None:
    print("NEED DATABASE_URL (or PGHOST/PGUSER/PGPASSWORD/PGDATABASE)!")
    sys.exit(1)

DB_CONNECT_RETRIES = int(os.environ.get("DB_CONNECT_RETRIES", "3"))
DB_CONNECT_RETRY_DELAY = float(os.environ.get("DB_CONNECT_RETRY_DELAY", "1.0"))

# ----------------------------
# Sessions & accounts
# ----------------------------
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@seatxfer.com").lower()
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
ALIAS_DOMAIN = os.environ.get("ALIAS_DOMAIN", "seatxfer.com").lower()

RESET_TOKEN_TTL_HOURS = int(os.environ.get("RESET_TOKEN_TTL_HOURS", "24"))
RESET_TOKEN_IN_RESPONSE = os.environ.get("RESET_TOKEN_IN_RESPONSE", "0") == "1"
RESET_NOTIFY_URL = os.environ.get("RESET_NOTIFY_URL", "")

# ----------------------------
# Mail ingestion
# ----------------------------
MAIL_SOURCE = os.environ.get("MAIL_SOURCE", "").lower()  # gmail | imap | ''

GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REDIRECT_URI = os.environ.get(
    "GOOGLE_REDIRECT_URI",
    "http://localhost:8000/api/gmail/callback"
)
GOOGLE_TOKEN = os.environ.get("GOOGLE_TOKEN", "")
GMAIL_TOKEN_FILE = os.environ.get("GMAIL_TOKEN_FILE", "gmail_token.json")
GMAIL_QUERY = os.environ.get("GMAIL_QUERY", "")
GMAIL_MAX_RESULTS = int(os.environ.get("GMAIL_MAX_RESULTS", "20"))

EMAIL_HOST = os.environ.get("EMAIL_HOST", "")
EMAIL_PORT = int(os.environ.get("EMAIL_PORT", "993"))
EMAIL_USER = os.environ.get("EMAIL_USER", "")
EMAIL_PASSWORD = os.environ.get("EMAIL_PASSWORD", "")
EMAIL_TLS = os.environ.get("EMAIL_TLS", "1") == "1"

EMAIL_POLL_INTERVAL = float(os.environ.get("EMAIL_POLL_INTERVAL", "300"))
EMAIL_MONITOR_AUTOSTART = os.environ.get("EMAIL_MONITOR_AUTOSTART", "0") == "1"
EMAIL_WEBHOOK_SECRET = os.environ.get("EMAIL_WEBHOOK_SECRET", "")

PROCESSED_TTL_DAYS = int(os.environ.get("PROCESSED_TTL_DAYS", "30"))
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")

# ----------------------------
# Reporting
# ----------------------------
SALES_COMMISSION_RATE = float(os.environ.get("SALES_COMMISSION_RATE", "0.10"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
