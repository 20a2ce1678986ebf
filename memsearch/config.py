"""
Configuration management for memsearch.

Implements multi-level configuration loading with precedence:
1. Explicit keyword arguments (highest priority)
2. Environment variables (MEMSEARCH_*)
3. .env files
4. Project config (./.memsearch/config.yaml)
5. User config (~/.memsearch/config.yaml)
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Literal, Optional, Tuple

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .models import MemoryConfig

if TYPE_CHECKING:
    from .embeddings import EmbeddingProvider
    from .manager import MemorySearchManager


class Settings(BaseSettings):
    """Complete configuration schema for memsearch with flat structure."""

    model_config = SettingsConfigDict(
        env_file=[
            ".env",
            str(Path.home() / ".memsearch" / ".env"),
        ],
        yaml_file=[
            str(Path.home() / ".memsearch" / "config.yaml"),  # User-specific
            str(Path.cwd() / ".memsearch" / "config.yaml"),  # Project-specific
        ],
        env_prefix="MEMSEARCH_",
        case_sensitive=False,
        # Ignore unrelated keys such as OPENAI_API_KEY
        extra="ignore",
        env_file_encoding="utf-8",
    )

    # =================================================================
    # Chunking and fusion
    # =================================================================
    tokens: int = Field(default=400, description="Target chunk size in tokens")
    overlap: int = Field(default=80, description="Tokens shared by consecutive chunks")
    vector_weight: float = Field(default=0.7, description="Weight of the vector similarity signal")
    text_weight: float = Field(default=0.3, description="Weight of the lexical signal")
    max_results: int = Field(default=6, description="Maximum results per search")
    min_score: Optional[float] = Field(
        default=None, description="Inclusive floor for fused scores (default: normalized text weight)"
    )
    candidate_multiplier: int = Field(
        default=4, description="Candidates fetched per signal, as a multiple of max_results"
    )

    # =================================================================
    # Embeddings
    # =================================================================
    embedding_provider: Literal["openai"] = Field(default="openai", description="Embedding provider")
    embedding_model: str = Field(default="text-embedding-3-small", description="Embedding model")
    embedding_dimensions: int = Field(default=1536, ge=1, description="Embedding vector size")
    embedding_base_url: Optional[str] = Field(default=None, description="OpenAI-compatible base URL")
    embedding_batch_size: int = Field(default=64, ge=1, description="Texts per embedding call")
    embedding_concurrency: int = Field(default=4, ge=1, description="Embedding calls in flight during sync")
    embedding_timeout_seconds: float = Field(default=30.0, gt=0, description="Timeout for one embedding call")
    embedding_cache: bool = Field(default=True, description="Reuse embeddings by content hash")

    # =================================================================
    # Corpus and storage
    # =================================================================
    context_dir: str = Field(default=".", description="Directory holding the markdown corpus")
    db_path: Optional[str] = Field(
        default=None, description="SQLite index path (default: <context_dir>/.memsearch/index.db)"
    )
    watch_poll_interval: float = Field(default=2.0, gt=0, description="Watcher polling interval in seconds")
    log_level: str = Field(default="INFO", description="Log level for configure_logging")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources to include YAML support."""
        yaml_settings = YamlConfigSettingsSource(settings_cls)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_settings,
            file_secret_settings,
        )

    def memory_config(self) -> MemoryConfig:
        """Engine configuration; raises ConfigurationError on invalid values."""
        return MemoryConfig(
            tokens=self.tokens,
            overlap=self.overlap,
            vector_weight=self.vector_weight,
            text_weight=self.text_weight,
            max_results=self.max_results,
            min_score=self.min_score,
            candidate_multiplier=self.candidate_multiplier,
        )

    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path)
        return Path(self.context_dir) / ".memsearch" / "index.db"


def load_config() -> Settings:
    """
    Load configuration from all sources with proper precedence.

    Examples:
        >>> settings = load_config()
        >>> settings.tokens
        400

        Environment variable override:
        # export MEMSEARCH_VECTOR_WEIGHT=0.5
        >>> load_config().vector_weight
        0.5
    """
    return Settings()


def build_manager(
    settings: Settings | None = None,
    provider: "EmbeddingProvider | None" = None,
    watch: bool = False,
) -> "MemorySearchManager":
    """Wire a manager over ``context_dir`` from settings.

    The provider defaults to the one named by ``embedding_provider``. With
    ``watch`` the manager re-syncs every ``watch_poll_interval`` seconds
    when files change.
    """
    from .embeddings import resolve_provider
    from .logging import configure_logging
    from .manager import MemorySearchManager
    from .sources import DirectorySource

    settings = settings or load_config()
    configure_logging(settings.log_level)
    config = settings.memory_config()
    if provider is None:
        provider = resolve_provider(
            settings.embedding_provider,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            base_url=settings.embedding_base_url,
            timeout=settings.embedding_timeout_seconds,
        )
    manager = MemorySearchManager(
        DirectorySource(settings.context_dir),
        provider,
        config,
        db_path=settings.resolved_db_path(),
        batch_size=settings.embedding_batch_size,
        concurrency=settings.embedding_concurrency,
        timeout=settings.embedding_timeout_seconds,
        cache_embeddings=settings.embedding_cache,
    )
    if watch:
        manager.start_watcher(settings.watch_poll_interval)
    return manager
