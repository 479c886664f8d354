"""Application configuration."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_BACKEND_DIR = Path(__file__).resolve().parents[1]
_ASSET_DIR = Path.home() / ".auto-extract"


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "Auto Extract API"

    openai_api_key: str | None = None
    openai_model: str = "gpt-5-mini"
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-haiku-4-5-20251001"
    remote_max_output_tokens: int = 4096
    remote_timeout_seconds: float = 90.0

    llama_server_path: Path = _ASSET_DIR / "llama" / "llama-server"
    model_path: Path = _ASSET_DIR / "model.gguf"
    model_download_url: str = (
        "https://huggingface.co/unsloth/gemma-3-1b-it-GGUF/resolve/main/gemma-3-1b-it-Q5_K_M.gguf"
    )
    llama_release_url: str = (
        "https://github.com/ggml-org/llama.cpp/releases/download/b8027/llama-b8027-bin-macos-arm64.tar.gz"
    )
    auto_download_model: bool = False
    local_context_size: int = 4096
    local_n_predict: int = 1024
    local_startup_timeout_seconds: float = 60.0
    local_request_timeout_seconds: float = 45.0
    local_health_interval_seconds: float = 0.25
    local_thread_reserve: int = 2

    model_config = SettingsConfigDict(
        env_file=str(_BACKEND_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()
