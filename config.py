"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
TASKS_DIR = Path(os.getenv("TASKS_DIR", str(Path.home() / "tasks")))

# Store: a postgresql:// URL selects Postgres, anything else is a SQLite file
DATABASE_URL = os.getenv("DATABASE_URL", "")
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "workbroker.db")))

# HTTP service
PORT = int(os.getenv("PORT", "3000"))
WORKER_API_KEY = os.getenv("WORKER_API_KEY", "")
API_BASE_URL = os.getenv("API_BASE_URL", f"http://localhost:{PORT}")
HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "20"))
SESSION_COOKIE = "session"

# Pricing: $6/hour
RATE_PER_MINUTE_USD = float(os.getenv("RATE_PER_MINUTE_USD", "0.10"))
MIN_MINUTES = 1
MAX_MINUTES = 120

# Solana
PAYMENT_WALLET = os.getenv("PAYMENT_WALLET", "4ym27TW1CzsV42sFvbMwSMRwiWsEu5tHFkeYJYoqozcf")
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
LAMPORTS_PER_SOL = 1_000_000_000

# Price feed
PRICE_FEED_URL = os.getenv(
    "PRICE_FEED_URL",
    "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd",
)
PRICE_CACHE_TTL_SEC = float(os.getenv("PRICE_CACHE_TTL_SEC", "60"))
SOL_PRICE_FALLBACK_USD = float(os.getenv("SOL_PRICE_FALLBACK_USD", "190"))

# Payment matching (tunable against the ledger's fee/rounding behaviour)
PAYMENT_TOLERANCE = float(os.getenv("PAYMENT_TOLERANCE", "0.005"))
PAYMENT_OFFSET_SCALE = float(os.getenv("PAYMENT_OFFSET_SCALE", "1e-9"))
PAYMENT_SCAN_LIMIT = int(os.getenv("PAYMENT_SCAN_LIMIT", "20"))

# Task execution
CLAUDE_BIN = os.getenv("CLAUDE_BIN", "claude")
ALLOWED_TOOLS = os.getenv("ALLOWED_TOOLS", "WebSearch,WebFetch,Read,Write,Edit,Bash,Glob,Grep")
TASK_KILL_GRACE_SEC = float(os.getenv("TASK_KILL_GRACE_SEC", "5"))

# Worker
WORKER_MODE = os.getenv("WORKER_MODE", "remote")  # "remote" (HTTP API) or "local" (store)
WORKER_POLL_INTERVAL_SEC = float(os.getenv("WORKER_POLL_INTERVAL_SEC", "5"))
WORKER_ERROR_BACKOFF_SEC = float(os.getenv("WORKER_ERROR_BACKOFF_SEC", "10"))

# Email
EMAIL_FROM = os.getenv("EMAIL_FROM", "claude@kookz.life")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "WorkingDevsHero")
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.protonmail.ch")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", EMAIL_FROM)
SMTP_PASS = os.getenv("SMTP_PASS", "")

# Directories never packed into the artifacts archive
ARCHIVE_SKIP_DIRS = {
    "node_modules", "__pycache__", ".venv", "venv", ".git",
    ".mypy_cache", ".pytest_cache", ".tox",
}
