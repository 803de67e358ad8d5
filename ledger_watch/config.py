"""Configuration settings module."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

# Ledger RPC endpoint
LEDGER_API_URL = os.environ.get("LEDGER_API_URL", "https://rpc.qubic.org/v1")
# Per-request ceiling in seconds
FETCH_TIMEOUT = float(os.environ.get("FETCH_TIMEOUT", "5"))

# Polling interval in seconds
POLLING_INTERVAL = int(os.environ.get("POLLING_INTERVAL", "10"))
# Smallest balance delta treated as a change
CHANGE_EPSILON = os.environ.get("CHANGE_EPSILON", "0.000001")
# Pass summaries without changes are logged once every N passes
LOG_EVERY_N_PASSES = int(os.environ.get("LOG_EVERY_N_PASSES", "6"))

# Email channel
SMTP_HOST = os.environ.get("SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USERNAME = os.environ.get("SMTP_USERNAME", "")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
SMTP_FROM = os.environ.get("SMTP_FROM", "")

# Chat-bot channel (Telegram)
TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")

# Background email/chat delivery
DELIVERY_WORKERS = int(os.environ.get("DELIVERY_WORKERS", "4"))

# State management
DATABASE_PATH = os.environ.get("DATABASE_PATH", "/data/ledger_watch.db")
LOG_DIR = os.environ.get("LOG_DIR", "/app/logs")

# HTTP API server
WEBHOOK_ENABLED = os.environ.get("WEBHOOK_ENABLED", "true").lower() == "true"
WEBHOOK_HOST = os.environ.get("WEBHOOK_HOST", "0.0.0.0")  # Listen on all interfaces by default
WEBHOOK_PORT = int(os.environ.get("WEBHOOK_PORT", "3112"))

# Debugging
DEBUG = os.environ.get("DEBUG", "false").lower() == "true"
