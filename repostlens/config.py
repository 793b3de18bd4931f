import os
from datetime import date, timedelta

from dotenv import load_dotenv

# Ensure env vars are loaded once here
load_dotenv()


def _env(name: str, default: str | None = None) -> str | None:
    # Empty strings count as unset
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


# OpenAI chat model used by analysis / outline / context-vector routes
OPENAI_API_KEY = _env("OPENAI_API_KEY")
DEFAULT_LLM_MODEL = _env("DEFAULT_LLM_MODEL", "gpt-5-mini-2025-08-07")

# Small model for pulling email fields out of a finished analysis
DEFAULT_EXTRACT_MODEL = _env("DEFAULT_EXTRACT_MODEL", "gpt-4o-mini")

# Remote SQL-over-HTTP service holding the Search Console rows
GSC_DB_ENDPOINT = _env("GSC_DB_ENDPOINT")

# Optional Google Chat incoming webhook
GOOGLE_CHAT_WEBHOOK_URL = _env("GOOGLE_CHAT_WEBHOOK_URL")

# Vertex AI (Gemini) for the writing assistants and batch processing
VERTEXAI_PROJECT = _env("VERTEXAI_PROJECT") or _env("GOOGLE_PROJECT_ID")
VERTEXAI_LOCATION = _env("VERTEXAI_LOCATION", "us-central1")
VERTEXAI_TEXT_MODEL = _env("VERTEXAI_TEXT_MODEL", "gemini-2.5-flash")
GOOGLE_CLIENT_EMAIL = _env("GOOGLE_CLIENT_EMAIL")
GOOGLE_PRIVATE_KEY = (_env("GOOGLE_PRIVATE_KEY") or "").replace("\\n", "\n") or None

LOG_LEVEL = _env("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in (_env("CORS_ORIGINS", "*") or "*").split(",") if o.strip()]

DEFAULT_SITE = "sc-domain:holidaysmart.io"
DEFAULT_PERIOD_DAYS = 14

# Third-party SEO services
COVERAGE_API_URL = "https://keyword-lens.vercel.app/api/url/coverage?url="
TOKENIZE_API_URL = "https://nlp.award-seo.com/api/v1/tokenize"
CONTENT_PROXY_URL = "https://page-lens-zeta.vercel.app/api/proxy/content"

FETCH_USER_AGENT = "Mozilla/5.0 (compatible; RepostLens/1.0)"


def require_gsc_endpoint() -> str:
    if not GSC_DB_ENDPOINT:
        raise RuntimeError("GSC_DB_ENDPOINT not set in environment")
    return GSC_DB_ENDPOINT.rstrip("/")


def search_endpoint() -> str:
    """SERP / content-explorer search lives on the same host as the query service."""
    return f"{require_gsc_endpoint()}/search?query="


def default_start_date(period_days: int = DEFAULT_PERIOD_DAYS) -> str:
    return (date.today() - timedelta(days=period_days)).isoformat()
