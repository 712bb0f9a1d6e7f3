from functools import lru_cache
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    # OpenAI settings
    openai_api_key: str = ''
    openai_model: str = 'gpt-4o-mini'
    openai_max_tokens: int = 180

    # Twilio settings
    twilio_account_sid: str = ''
    twilio_auth_token: str = ''
    twilio_phone_number: str = ''
    twilio_validate_signature: bool = False

    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''

    # Service URLs
    base_url: str = 'http://localhost:8000'
    smhi_base_url: str = 'https://opendata-download-metfcst.smhi.se/api'
    overpass_url: str = 'https://overpass-api.de/api/interpreter'
    http_timeout_seconds: float = 10.0

    # Rate limiting
    rate_limit_per_minute: int = 5
    rate_limit_per_hour: int = 30
    rate_limit_per_day: int = 200
    rate_limit_sweep_seconds: int = 300

    # Conversation context
    session_timeout_minutes: int = 30
    session_max_messages: int = 3
    location_max_age_hours: int = 24

    # Billing
    signup_bonus_credits: int = 3

    log_level: str = 'INFO'

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

@lru_cache()
def get_settings() -> Settings:
    return Settings()
