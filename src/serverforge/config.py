"""ServerForge configuration settings."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from serverforge.infrastructure.logging_setup import configure_logging
from serverforge.infrastructure.path_guard import (
    ensure_within_root,
    normalize_path,
    safe_join,
)


class Settings(BaseSettings):
    """Application settings with env var support."""

    model_config = SettingsConfigDict(
        env_prefix="SERVERFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Rooted runtime paths (database must remain inside data_root)
    data_root: Path = Field(default=Path(".serverforge"))
    database_path: Path = Field(default=Path("state/serverforge.db"))

    # Server/observability
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8000, ge=1, le=65535)
    api_reload: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # LLM configuration
    llm_provider: str = "anthropic"
    anthropic_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SERVERFORGE_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    )
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SERVERFORGE_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.2
    llm_max_tokens: int = 8192
    llm_timeout_seconds: int = 180

    # Credit prices (charged on accept)
    generation_cost: float = Field(default=20.0, ge=0)
    refinement_cost: float = Field(default=10.0, ge=0)

    # Sandbox configuration
    sandbox_backend: Literal["unconfined", "jailed"] = "unconfined"
    sandbox_timeout_seconds: int = Field(default=30, ge=1)
    sandbox_max_memory_mb: int = Field(default=1024, ge=64)
    sandbox_node_binary: str = "node"
    sandbox_node_modules_path: Optional[Path] = None
    sandbox_scratch_root: Optional[Path] = None
    nsjail_binary: str = "nsjail"
    nsjail_seccomp_policy: Path = Field(default=Path("/etc/nsjail/node-sandbox.policy"))
    nsjail_uid: int = 65534
    nsjail_gid: int = 65534
    nsjail_readonly_mounts: list[str] = Field(
        default_factory=lambda: ["/lib", "/lib64", "/usr/lib"]
    )

    # Hosted servers and royalties
    hosted_internal_key: str = "internal"
    hosted_base_path: str = "/api/v1/hosted"
    royalty_creator_share_percent: float = Field(default=50.0, ge=0, le=100)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return str(value or "INFO").strip().upper()

    def _resolve_under_root(self, value: Path) -> Path:
        root = normalize_path(self.data_root)
        raw = Path(value)
        if raw.is_absolute():
            return ensure_within_root(root, raw)
        if not raw.parts:
            return root
        return safe_join(root, *raw.parts)

    def _normalize_runtime_paths(self) -> None:
        self.data_root = normalize_path(self.data_root)
        self.database_path = self._resolve_under_root(self.database_path)

    @model_validator(mode="after")
    def _normalize_paths_validator(self) -> "Settings":
        self._normalize_runtime_paths()
        return self

    def setup_logging(self) -> None:
        configure_logging(level=self.log_level, json_logs=self.log_json)

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        self._normalize_runtime_paths()
        self.data_root.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        if self.sandbox_scratch_root is not None:
            Path(self.sandbox_scratch_root).mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
