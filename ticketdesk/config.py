import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./ticketdesk.db")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
FRONTEND_URI = os.environ.get("FRONTEND_URI", "http://localhost:3000")

# run the outbox + webhook workers inside the web process
RUN_WORKERS = os.environ.get("RUN_WORKERS", "1") == "1"
WORKER_POLL_SECONDS = float(os.environ.get("WORKER_POLL_SECONDS", "5"))

# 'log' | 'mailtrap'
MAIL_BACKEND = os.environ.get("MAIL_BACKEND", "log").lower()
MAILTRAP_TOKEN = os.environ.get("MAILTRAP_TOKEN", "")
MAILTRAP_API_URL = os.environ.get(
    "MAILTRAP_API_URL", "https://send.api.mailtrap.io/api/send"
)
MAIL_SENDER_EMAIL = os.environ.get(
    "MAIL_SENDER_EMAIL", "noreply@ticketdesk.local"
)
MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "ticketdesk")

WEBHOOK_MAX_RETRIES = int(os.environ.get("WEBHOOK_MAX_RETRIES", "3"))
WEBHOOK_RETRY_BASE_SECONDS = float(
    os.environ.get("WEBHOOK_RETRY_BASE_SECONDS", "60")
)
WEBHOOK_RETRY_MAX_SECONDS = float(
    os.environ.get("WEBHOOK_RETRY_MAX_SECONDS", "3600")
)
WEBHOOK_TIMEOUT_SECONDS = float(os.environ.get("WEBHOOK_TIMEOUT_SECONDS", "30"))
# consecutive terminal failures before an endpoint is switched off
WEBHOOK_FAILURE_THRESHOLD = int(
    os.environ.get("WEBHOOK_FAILURE_THRESHOLD", "3")
)

CAMPAIGN_BATCH_SIZE = int(os.environ.get("CAMPAIGN_BATCH_SIZE", "10"))
CAMPAIGN_BATCH_PAUSE_SECONDS = float(
    os.environ.get("CAMPAIGN_BATCH_PAUSE_SECONDS", "1.0")
)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

METRICS_URL = os.environ.get("METRICS_URL", "")
METRICS_RUN_ID = os.environ.get("METRICS_RUN_ID", "")

# python -m ticketdesk
HOST = os.environ.get("HOST", "127.0.0.1")
PORT = int(os.environ.get("PORT", "8000"))
