"""
Global settings — loads from .env and exposes typed config values to the rest of the app.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ── Paths ──────────────────────────────────────────────────────────────────────
ROOT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(ROOT_DIR / "data")))
EXPORT_DIR = Path(os.getenv("EXPORT_DIR", str(DATA_DIR / "exports")))
LOGS_DIR = ROOT_DIR / "logs"
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "cache.db")))

# ── General ────────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── Platform API ───────────────────────────────────────────────────────────────
ZSXQ_TOKEN    = os.getenv("ZSXQ_TOKEN")
ZSXQ_API_BASE = os.getenv("ZSXQ_API_BASE", "https://api.zsxq.com/v2")
API_TIMEOUT_S = float(os.getenv("API_TIMEOUT_S", "15"))
PLATFORM_UTC_OFFSET = os.getenv("PLATFORM_UTC_OFFSET", "+0800")   # suffix of create_time values

# ── Fetcher ────────────────────────────────────────────────────────────────────
FETCH_BATCH_SIZE = int(os.getenv("FETCH_BATCH_SIZE", "20"))
FETCH_DELAY_S    = float(os.getenv("FETCH_DELAY_S", "0.3"))   # pause between pages

# ── Image downloader ───────────────────────────────────────────────────────────
DOWNLOAD_CONCURRENCY = int(os.getenv("DOWNLOAD_CONCURRENCY", "5"))
DOWNLOAD_TIMEOUT_S   = float(os.getenv("DOWNLOAD_TIMEOUT_S", "30"))
DOWNLOAD_RETRIES     = int(os.getenv("DOWNLOAD_RETRIES", "3"))

# ── Export tasks ───────────────────────────────────────────────────────────────
TASK_RETENTION_S     = int(os.getenv("TASK_RETENTION_S", "600"))       # in-memory task lifetime
EXPORT_MAX_AGE_HOURS = int(os.getenv("EXPORT_MAX_AGE_HOURS", "24"))    # ZIP files on disk

# ── Background sync ────────────────────────────────────────────────────────────
SYNC_GROUPS     = [g.strip() for g in os.getenv("SYNC_GROUPS", "").split(",") if g.strip()]
SYNC_INTERVAL_S = int(os.getenv("SYNC_INTERVAL_S", "3600"))

# ── Discord alerts ─────────────────────────────────────────────────────────────
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL")
