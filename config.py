"""Application configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings."""

    # HTTP
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    accept_language: str = "zh-CN,zh;q=0.9,en;q=0.8"
    request_timeout: float = 15.0
    max_redirects: int = 10

    # Scripts
    script_command: List[str] = ["node", "-e"]
    script_timeout: float = 5.0

    # Pipeline
    io_workers: int = 8
    max_next_pages: int = 50
    debug_buffer_size: int = 500

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = True

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    def default_headers(self) -> dict:
        """Headers sent with every request unless a source overrides them."""
        return {
            "User-Agent": self.user_agent,
            "Accept": self.accept,
            "Accept-Language": self.accept_language,
        }


settings = Settings()
