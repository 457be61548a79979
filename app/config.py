from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Groq
    groq_api_key: str = "gsk_placeholder"
    # Correction waterfall, tried in order: fast default, high-throughput
    # backup, advanced-reasoning fallback.
    correction_models: list[str] = [
        "llama-3.3-70b-versatile",
        "llama-3.1-8b-instant",
        "moonshotai/kimi-k2-instruct",
    ]
    correction_timeout_seconds: float = 15.0
    default_language: str = "English"

    # Analysis
    auto_retry_limit: int = 1
    auto_retry_delay_seconds: float = 2.0
    retry_backend_errors: bool = True
    max_concurrent_analyses: int = 0  # 0 = unlimited

    # Whisper
    whisper_model: str = "small"
    whisper_device: str = "cpu"
    whisper_compute_type: str = "int8"

    # Capture
    sample_rate: int = 16000
    segment_seconds: float = 4.0
    capture_poll_seconds: float = 0.25

    # Storage
    database_path: str = "tutor.db"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
