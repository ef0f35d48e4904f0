# polaris/settings.py
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# --- Google / Vertex ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = int(os.getenv("DB_PORT", "5432"))
DB_NAME = os.getenv("DB_NAME", "polaris")
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_SECRET_ID = os.getenv("DB_SECRET_ID", "")

# --- Job lifecycle ---
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "3.0"))
POLL_TIMEOUT_SECONDS = float(os.getenv("POLL_TIMEOUT_SECONDS", "900"))
SESSION_SAVE_DEBOUNCE_SECONDS = float(os.getenv("SESSION_SAVE_DEBOUNCE_SECONDS", "1.5"))
EDIT_QUOTA = int(os.getenv("EDIT_QUOTA", "3"))

# --- Generation ---
DEFAULT_REPORT_MODEL = os.getenv("DEFAULT_REPORT_MODEL", "gemini-2.5-flash-lite")
DEFAULT_QUESTION_MODEL = os.getenv("DEFAULT_QUESTION_MODEL", "gemini-2.5-flash-lite")
REPORT_TEMPERATURE = float(os.getenv("REPORT_TEMPERATURE", "0.2"))
REPORT_MAX_TOKENS = int(os.getenv("REPORT_MAX_TOKENS", "4000"))
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "300"))

# "local" runs report jobs in this deployment (report_jobs table + worker),
# "http" talks to a remote report-jobs endpoint.
GENERATION_PROVIDER = os.getenv("GENERATION_PROVIDER", "local")
GENERATION_PROVIDER_URL = os.getenv("GENERATION_PROVIDER_URL", "http://localhost:8000")
GENERATION_PROVIDER_TIMEOUT = float(os.getenv("GENERATION_PROVIDER_TIMEOUT", "15"))
REPORT_WORKER_CONCURRENCY = int(os.getenv("REPORT_WORKER_CONCURRENCY", "4"))
REPORT_WORKER_POLL_INTERVAL = float(os.getenv("REPORT_WORKER_POLL_INTERVAL", "1.0"))


@dataclass(frozen=True)
class OrchestratorSettings:
    poll_interval: float = POLL_INTERVAL_SECONDS
    poll_timeout: float = POLL_TIMEOUT_SECONDS
    debounce_seconds: float = SESSION_SAVE_DEBOUNCE_SECONDS
    edit_quota: int = EDIT_QUOTA
    report_model: str = DEFAULT_REPORT_MODEL
    question_model: str = DEFAULT_QUESTION_MODEL
    temperature: float = REPORT_TEMPERATURE
    max_tokens: int = REPORT_MAX_TOKENS
