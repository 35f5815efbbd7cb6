from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),
        extra="ignore",
    )

    # LLM (itinerary generation + intent classification)
    groq_api_key: str | None = None
    groq_api_key_2: str | None = None  # Fallback key for rate-limit rotation
    groq_model: str = "qwen/qwen3-32b"

    # External data providers
    openweather_api_key: str | None = None
    openweather_base_url: str = "https://api.openweathermap.org/data/2.5"
    google_places_api_key: str | None = None
    google_places_base_url: str = "https://maps.googleapis.com/maps/api/place"
    amadeus_client_id: str | None = None
    amadeus_client_secret: str | None = None
    amadeus_hostname: str = "test"
    provider_timeout_seconds: float = 10.0

    # Response cache
    cache_ttl_seconds: float = 300.0
    cache_ttl_overrides: dict[str, float] = {}

    # Conversation timing
    draft_debounce_seconds: float = 0.5
    generation_timeout_seconds: float = 30.0

    # Sessions
    session_jwt_secret: str = "tripchat-dev-secret"
    session_jwt_algorithm: str = "HS256"
    session_jwt_ttl_hours: int = 24 * 7

    # App
    frontend_url: str = "http://localhost:5173"
    db_path: str = str(Path(__file__).resolve().parents[1] / "tripchat.db")


settings = Settings()
