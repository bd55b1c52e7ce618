from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Completion endpoint (OpenAI-compatible, OpenRouter by default)
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_api_key: str | None = None
    llm_app_title: str = "ChatDesk"
    llm_app_url: str = "https://chatdesk.local"

    # Storage
    chatdesk_db_url: str = "sqlite+aiosqlite:///data/chatdesk.db"
    chatdesk_data_dir: str = "data"
    chatdesk_export_dir: str = "data/exports"

    # Logging
    chatdesk_log_level: str = "info"

    # Conversation defaults
    chatdesk_system_prompt: str = ""
    chatdesk_default_model: str | None = None
    chatdesk_max_context_messages: int = 20
    chatdesk_max_attachment_messages: int = 5
    chatdesk_default_temperature: float = 0.7
    chatdesk_default_max_tokens: int = 4000

    # Reasoning request shaping
    chatdesk_reasoning_budget_floor: int = 1024
    chatdesk_reasoning_max_tokens: int = 8000

    # Periodic flush of dirty conversations (seconds)
    chatdesk_autosave_interval: float = 30.0

    # HTTP client timeouts (seconds)
    chatdesk_http_connect_timeout: float = 5.0
    chatdesk_http_read_timeout: float = 120.0

    # Local UI origins
    chatdesk_cors_origins: str = "http://localhost:5173,app://chatdesk"

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
