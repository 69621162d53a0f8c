# splitit/config.py
import os
from decimal import Decimal

from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
DEFAULT_APP_BASE_URL = "http://localhost:8000"


def get_gemini_config() -> tuple[str, str]:
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    if not GEMINI_API_KEY:
        raise ValueError("GEMINI_API_KEY environment variable not set. This key is required for genai.Client().")
    MODEL_NAME = os.environ.get("GEMINI_MODEL_NAME", DEFAULT_GEMINI_MODEL)
    return GEMINI_API_KEY, MODEL_NAME


def get_api_key() -> str | None:
    # Read per request so a rotated key does not need a restart
    return os.getenv("API_KEY")


def get_app_base_url() -> str:
    return os.environ.get("APP_BASE_URL", DEFAULT_APP_BASE_URL).rstrip("/")


def get_max_image_size_bytes() -> int:
    try:
        size_mb = float(os.environ.get("MAX_IMAGE_SIZE_MB", "2"))
    except ValueError:
        size_mb = 2.0
    return int(size_mb * 1024 * 1024)


def get_default_tip_rate() -> Decimal:
    raw = os.environ.get("DEFAULT_TIP_RATE", "18")
    try:
        rate = Decimal(raw)
    except ArithmeticError:
        return Decimal("18")
    return rate if rate.is_finite() and rate >= 0 else Decimal("18")
