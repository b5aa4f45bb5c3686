from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="NARRATION_SERVICE_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "narration-service"
    host: str = "0.0.0.0"
    port: int = 8100

    # Supabase (auth + storage)
    supabase_url: str = ""
    supabase_service_key: str = ""
    supabase_public_url: str = ""
    auth_timeout: float = 10.0

    # Object storage configuration
    storage_backend: str = "supabase"
    audio_bucket: str = "audio"
    music_bucket: str = "background_music"
    s3_endpoint_url: str = ""
    s3_region: str | None = None
    s3_public_url: str = ""
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_addressing_style: str | None = None
    storage_timeout: float = 30.0

    # Speech synthesis
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com"
    audio_model: str = "tts-1-hd"
    default_voice: str = "alloy"
    voice_fallback_enabled: bool = True
    tts_timeout: float = 60.0

    # Alignment
    whisper_local_model: str = "base"
    alignment_language: str = "en"

    # Credits
    audio_credit_cost: int = 1
    new_user_credits: int = 30
    batch_concurrency: int = 1

    # External imports
    max_import_bytes: int = 50 * 1024 * 1024
    download_timeout: float = 60.0
    downloader_tool: str = "yt-dlp"
    downloader_fallback_tool: str = "youtube-dl"
    downloader_timeout: float = 300.0
    music_import_max_requests: int = 10
    music_import_window_ms: int = 60 * 60 * 1000

    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_billing_topic: str = "billing_events"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
