import os

from dotenv import load_dotenv

load_dotenv()

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
FRONTEND_URL = os.getenv("FRONTEND_URL", "*")

# ----------------------
# Database
# ----------------------
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# ----------------------
# Auth
# ----------------------
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", str(7 * 24 * 60)))
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "superadmin@learnhub.dev")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

# ----------------------
# Courses & uploads
# ----------------------
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "NGN")
DEFAULT_MAX_STUDENTS = int(os.getenv("DEFAULT_MAX_STUDENTS", "100"))
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))
UPLOAD_URL_PREFIX = "/uploads"
MAX_SUBMISSION_FILES = int(os.getenv("MAX_SUBMISSION_FILES", "5"))

# ----------------------
# AI (OpenAI-compatible endpoint)
# ----------------------
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
CODING_MODEL = os.getenv("CODING_MODEL", "kwaipilot/kat-coder-pro:free")
GENERAL_MODEL = os.getenv("GENERAL_MODEL", "x-ai/grok-4.1-fast:free")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "60"))

# ----------------------
# Email
# ----------------------
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
EMAIL_FROM = os.getenv("EMAIL_FROM", "no-reply@learnhub.dev")


def is_production() -> bool:
    return ENVIRONMENT.lower() == "production"
