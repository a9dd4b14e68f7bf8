from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.3.0"
    log_level: str = "INFO"
    database_path: str = "data/commercepix.db"
    database_timeout_sec: int = 30

    storage_dir: str = "storage"
    storage_signing_key: str = "dev-signing-key"
    input_bucket: str = "input-images"
    output_bucket: str = "output-images"
    signed_url_ttl_sec: int = 3600
    storage_fetch_timeout_sec: int = 30
    max_upload_mb: int = 10

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_image_model: str = "dall-e-2"
    image_size: str = "1024x1024"
    provider_timeout_sec: int = 120
    provider_max_attempts: int = 1

    rate_limit_per_minute: int = 10
    rate_limit_per_day: int = 100

    generation_cost_units: int = 1
    job_timeout_sec: int = 600

    admin_api_token: str = ""
    api_base_url: str = "http://localhost:8900"


settings = Settings()
