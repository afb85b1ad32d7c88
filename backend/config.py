from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./data/pixelplacer.db"
    data_dir: str = "./data"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 9696

    # Operator authentication
    secret_key: str = "your-secret-key-change-this-in-production"
    admin_password: str = "pixeladmin"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 7 * 24 * 60  # 7 days

    # Remote canvas service
    canvas_api_url: str = "https://backend.wplace.live"
    canvas_referer: str = "https://wplace.live/"
    proxy_url: Optional[str] = None
    request_timeout_seconds: float = 30.0
    tile_size: int = 1000

    # Engine timing
    charge_regen_seconds: float = 30.0
    charge_sync_seconds: float = 8 * 60
    token_ttl_seconds: float = 2 * 60
    server_error_backoff_seconds: float = 40.0
    retry_initial_seconds: float = 30.0
    retry_max_seconds: float = 5 * 60
    token_refresh_attempts: int = 5
    token_refresh_delay_seconds: float = 1.0
    keep_alive_stagger_seconds: float = 2.0
    account_check_timeout_seconds: float = 30.0
    suspension_default_seconds: float = 10 * 60

    class Config:
        env_file = ".env"
        env_prefix = "PIXELPLACER_"

settings = Settings()
