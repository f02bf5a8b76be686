from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Research service (OpenAI Responses API, background mode)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    deep_research_model: str = "o4-mini-deep-research-2025-06-26"
    deep_research_system_prompt: str = (
        "You are a deep research assistant. Provide comprehensive, well-researched "
        "answers with citations and sources where applicable."
    )
    http_timeout_seconds: float = 60.0

    # Job life cycle
    job_max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    poll_interval_seconds: float = 5.0
    job_timeout_seconds: float = 600.0
    progress_tick_polls: int = 6  # one "still polling" section update every N polls

    # Progress stream
    heartbeat_after_seconds: float = 30.0
    unsubscribed_run_ttl_seconds: float = 300.0  # finished runs nobody streamed are dropped after this
    preview_chars: int = 200
    default_section_count: int = 5

    # Persistence
    research_output_dir: str = "./research-output"

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def openai_configured(self) -> bool:
        return bool(self.openai_api_key.strip())


settings = Settings()
