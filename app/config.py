from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./data/angles.sqlite3"
    api_key: str = ""  # empty = no auth check (local dev)
    log_level: str = "INFO"
    max_upload_size_bytes: int = 10 * 1024 * 1024  # 10MB
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:8000"]

    analyzer: str = "gradient"
    analysis_timeout_seconds: float = 5.0
    analysis_concurrency: int = 2
    normalize_on_server: bool = False

    target_short_edge: int = 1024
    jpeg_quality: int = 85
    max_canvas_pixels: int = 40_000_000

    memo_max_length: int = 100
    default_range_days: int = 30

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
