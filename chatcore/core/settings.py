# chatcore/core/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    app_env: str = "dev"
    app_name: str = "Chat Orchestrator"
    app_host: str = "127.0.0.1"
    app_port: int = 8000

    log_level: str = "INFO"
    db_url: str = "sqlite:///data/app.db"

    # Provider endpoints / credentials
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
    openai_organization: Optional[str] = Field(default=None, validation_alias="OPENAI_ORGANIZATION")
    openai_force_prompt: bool = Field(default=False, validation_alias="OPENAI_FORCE_PROMPT")
    openrouter_api_key: Optional[str] = Field(default=None, validation_alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1", validation_alias="OPENROUTER_BASE_URL")
    app_title: str = Field(default="ChatOrchestrator", validation_alias="APP_TITLE")
    app_referer: str = Field(default="http://localhost:8000", validation_alias="APP_REFERER")
    azure_openai_api_key: Optional[str] = Field(default=None, validation_alias="AZURE_OPENAI_API_KEY")
    azure_openai_instance_name: Optional[str] = Field(default=None, validation_alias="AZURE_OPENAI_INSTANCE_NAME")
    azure_openai_deployment_name: Optional[str] = Field(default=None, validation_alias="AZURE_OPENAI_DEPLOYMENT_NAME")
    azure_openai_api_version: str = Field(default="2024-02-01", validation_alias="AZURE_OPENAI_API_VERSION")
    azure_openai_default_model: Optional[str] = Field(default=None, validation_alias="AZURE_OPENAI_DEFAULT_MODEL")
    azure_use_model_as_deployment_name: bool = Field(default=False, validation_alias="AZURE_USE_MODEL_AS_DEPLOYMENT_NAME")
    ollama_base_url: str = Field(default="http://127.0.0.1:11434/v1", validation_alias="OLLAMA_BASE_URL")
    request_timeout_sec: float = Field(default=60.0, validation_alias="REQUEST_TIMEOUT_SEC")

    # Model / budget defaults
    default_model: str = Field(default="gpt-3.5-turbo", validation_alias="DEFAULT_MODEL")
    default_context_tokens: int = Field(default=4095, validation_alias="DEFAULT_CONTEXT_TOKENS")
    default_response_tokens: int = Field(default=1024, validation_alias="DEFAULT_RESPONSE_TOKENS")
    stream_max_tokens: int = Field(default=1000, validation_alias="STREAM_MAX_TOKENS")
    vision_max_tokens: int = Field(default=4000, validation_alias="VISION_MAX_TOKENS")
    default_vision_model: str = Field(default="gpt-4-vision-preview", validation_alias="DEFAULT_VISION_MODEL")
    context_strategy: str = Field(default="discard", validation_alias="CONTEXT_STRATEGY")  # discard|summarize
    summary_model: str = Field(default="gpt-3.5-turbo", validation_alias="SUMMARY_MODEL")
    title_model: str = Field(default="gpt-3.5-turbo", validation_alias="TITLE_MODEL")
    embedded_file_max_chars: int = Field(default=4000, validation_alias="EMBEDDED_FILE_MAX_CHARS")

    # Tokenizer pool
    tokenizer_reset_calls: int = Field(default=25, validation_alias="TOKENIZER_RESET_CALLS")

    # Provider quirks
    leading_system_hosts: List[str] = Field(default_factory=lambda: ["api.mistral.ai"], validation_alias="LEADING_SYSTEM_HOSTS")
    lone_system_hosts: List[str] = Field(
        default_factory=lambda: ["api.mistral.ai", "api.perplexity.ai"], validation_alias="LONE_SYSTEM_HOSTS"
    )
    azure_stream_delay_ms: int = Field(default=17, validation_alias="AZURE_STREAM_DELAY_MS")
    azure_stream_delay_gpt4_ms: int = Field(default=30, validation_alias="AZURE_STREAM_DELAY_GPT4_MS")

    # Content safety
    safety_prompt: Optional[str] = Field(default=None, validation_alias="SAFETY_PROMPT")
    pg_base_url: Optional[str] = Field(default=None, validation_alias="PG_BASE_URL")
    pg_token: Optional[str] = Field(default=None, validation_alias="PG_TOKEN")
    injection_threshold: float = Field(default=0.49, validation_alias="INJECTION_THRESHOLD")
    pii_check_model: str = Field(default="Neural-Chat-7B", validation_alias="PII_CHECK_MODEL")
    show_injection: bool = Field(default=True, validation_alias="SHOW_INJECTION")
    show_pii: bool = Field(default=True, validation_alias="SHOW_PII")

    # Pricing overrides ("model:prompt" -> price per 1k)
    price_overrides: Dict[str, float] = Field(default_factory=dict)

    @property
    def db_dialect(self) -> str:
        return self.db_url.split(":", 1)[0] if ":" in self.db_url else self.db_url


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    import os

    overrides: Dict[str, float] = {}
    for k, v in os.environ.items():
        if not k.startswith("PRICE__"):
            continue
        parts = k.split("__", 2)
        if len(parts) == 3:
            mdl = parts[1].lower()
            kind = parts[2].lower()
            try:
                overrides[f"{mdl}:{kind}"] = float(v)
            except ValueError:
                continue
    s = AppSettings()
    s.price_overrides = overrides
    return s
