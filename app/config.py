"""Application configuration and environment variables"""

import logging
from typing import Optional
from pydantic_settings import BaseSettings
from supabase import create_client, Client, ClientOptions

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Supabase configuration
    supabase_url: str
    supabase_service_role_key: str
    supabase_timeout_seconds: float = 10.0

    # Clinic wall clock (schedules are stored in local time)
    clinic_timezone: str = "America/Sao_Paulo"

    # Primary model provider (Lovable AI gateway, OpenAI-compatible)
    lovable_api_key: Optional[str] = None
    lovable_api_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    lovable_model: str = "google/gemini-2.5-flash"

    # Fallback model provider, used when the primary runs out of credits
    openai_api_key: Optional[str] = None
    openai_api_url: str = "https://api.openai.com/v1/chat/completions"
    openai_model: str = "gpt-4o-mini"

    llm_timeout_seconds: float = 30.0

    # Assistant behaviour
    assistant_max_tool_rounds: int = 5
    assistant_api_secret: Optional[str] = None  # Shared secret for /api/assistant/chat

    # Availability search
    availability_horizon_days: int = 30
    max_open_dates: int = 5
    max_times_per_day: int = 10
    booking_lead_minutes: int = 0  # Extra margin after "now" for same-day slots

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }


# Global settings instance
settings = Settings()

# Supabase client with service role key (bypasses RLS for backend operations)
try:
    supabase: Client = create_client(
        settings.supabase_url,
        settings.supabase_service_role_key,
        options=ClientOptions(postgrest_client_timeout=settings.supabase_timeout_seconds),
    )
    logger.info("Supabase client initialized successfully")
except Exception as e:
    logger.error(f"Failed to initialize Supabase client: {e}")
    raise
