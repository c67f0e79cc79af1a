import secrets
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    app_name: str = Field(default="forgejo-bridge", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment mode"
    )

    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(
        default=3000,
        validation_alias=AliasChoices("port", "api_port"),
        description="API server port",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", description="Log output format"
    )

    # Upstream Forgejo
    forgejo_url: str = Field(
        default="https://your-forgejo.com", description="Forgejo base URL"
    )
    forgejo_token: str = Field(
        default="", description="Forgejo API token used for all upstream calls"
    )
    upstream_timeout_seconds: float = Field(
        default=30.0, description="Timeout for Forgejo REST API calls"
    )

    # Bridge identity and webhooks
    bridge_url: str = Field(
        default="http://localhost:3000",
        description="Public URL of this bridge, used as the Forgejo webhook target",
    )
    bridge_secret: str = Field(
        default="",
        description="HMAC secret for Forgejo webhooks (random if empty)",
    )
    coolify_webhook_url: str = Field(
        default="https://your-coolify.com/api/v1/webhooks/github",
        description="Downstream webhook URL",
    )
    oauth_code_ttl_seconds: int = Field(
        default=600, description="Lifetime of issued OAuth authorization codes"
    )

    # Git mirror cache
    cache_root: Path = Field(
        default=Path("./git-cache"), description="Root directory of mirrored repositories"
    )
    eviction_delay_seconds: float = Field(
        default=300.0, description="Delay before an idle mirror is deleted"
    )
    max_mirrors: int = Field(
        default=100, description="Maximum number of mirrors kept on disk (0 = unbounded)"
    )
    git_sync_timeout_seconds: float = Field(
        default=300.0, description="Timeout for upstream clone/fetch"
    )

    # git http-backend
    git_binary_path: str = Field(default="git", description="Path to git binary")
    git_http_backend_path: Optional[str] = Field(
        default=None,
        description="Path to git-http-backend (defaults to `git http-backend`)",
    )
    git_backend_timeout_seconds: float = Field(
        default=600.0, description="Upper bound on one git-http-backend run"
    )
    cgi_header_timeout_seconds: float = Field(
        default=30.0, description="Time allowed for git-http-backend to emit headers"
    )
    max_cgi_header_bytes: int = Field(
        default=64 * 1024, description="Maximum size of the CGI header block"
    )

    cors_allow_origins: List[str] = Field(
        default=["*"], description="Allowed CORS origins"
    )

    @field_validator("forgejo_url", "bridge_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("bridge_secret")
    @classmethod
    def generate_bridge_secret(cls, v: str) -> str:
        return v or secrets.token_hex(32)

    @model_validator(mode="after")
    def force_json_logs_in_production(self) -> "Settings":
        if self.environment == "production":
            self.log_format = "json"
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def git_http_backend_command(self) -> List[str]:
        if self.git_http_backend_path:
            return [self.git_http_backend_path]
        return [self.git_binary_path, "http-backend"]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


settings = get_settings()
