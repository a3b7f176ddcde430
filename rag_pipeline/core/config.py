"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Annotated, Iterable, List, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from rag_pipeline.core.errors import ConfigurationError

# Load environment variables from .env file if it exists
# In Docker/production, environment variables are set directly
ENV_FILE_OPT: str | None = None

_env_path = Path(".env")
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path)
    ENV_FILE_OPT = str(_env_path)

DEFAULT_CATEGORIES = [
    "Technical Documentation",
    "Product Documentation",
    "User Manual",
    "API Documentation",
    "Other",
]

STAGE_NAMES = ("clone", "clean", "upload")


class Settings(BaseSettings):
    """Application configuration.

    Loads settings from environment variables. In local development, these can be
    provided via a .env file. In Docker/production, they should be set directly.
    """

    model_config = SettingsConfigDict(
        # Only hint an env file to pydantic if it actually exists
        env_file=ENV_FILE_OPT,
        env_file_encoding="utf-8",
        extra="ignore",
        # Don't error if .env file is missing (Docker/production use env vars directly)
        env_ignore_empty=True,
    )

    # Application
    app_name: str = "RAG Pipeline"
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(
        default=None, description="Optional path of a log file written alongside stderr"
    )
    docs_name: str = Field(
        default="knowledge-base", description="Human readable name of the document collection"
    )

    # Document source (Feishu/Lark drive open API)
    source_base_url: str = Field(
        default="https://open.feishu.cn", description="Drive open API base URL"
    )
    source_app_id: Optional[str] = Field(default=None, description="Drive application ID")
    source_app_secret: Optional[SecretStr] = Field(
        default=None, description="Drive application secret"
    )
    source_timeout: float = Field(default=30.0, description="Drive request timeout (seconds)")
    source_page_size: int = Field(default=50, description="Page size for folder listings")
    folder_tokens: Annotated[List[str], NoDecode] = Field(
        default_factory=list, description="Default folder tokens to collect from"
    )

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(
        default=None, description="Optional OpenAI-compatible base URL"
    )
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model for enrichment")
    embedding_model: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    vector_dim: int = Field(default=1536, description="Vector dimensions")
    embedding_max_chars: int = Field(
        default=8000, description="Maximum characters sent to the embedding model"
    )

    # LLM Retry Configuration
    llm_max_retries: int = Field(default=3, description="Maximum retries for LLM calls")
    llm_initial_delay: float = Field(
        default=1.0, description="Initial delay for LLM retries (seconds)"
    )
    llm_backoff_factor: float = Field(default=2.0, description="Backoff factor for LLM retries")
    llm_max_delay: float = Field(default=10.0, description="Upper bound on a single retry delay")

    # LLM Request Timeout (seconds)
    llm_timeout: float = Field(default=60.0, description="HTTP timeout for LLM requests (seconds)")

    # Enrichment
    document_categories: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_CATEGORIES),
        description="Categories the classifier may choose from",
    )
    default_category: str = Field(
        default="Other", description="Category assigned when classification is unavailable"
    )
    max_keywords: int = Field(default=5, description="Number of keywords to extract")

    # Redis
    redis_url: SecretStr = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    redis_password: Optional[SecretStr] = Field(default=None, description="Redis password")
    redis_timeout: float = Field(
        default=10.0, gt=0, description="Timeout for a single Redis command (seconds)"
    )
    redis_connect_timeout: float = Field(
        default=5.0, gt=0, description="Timeout for opening a Redis connection (seconds)"
    )
    cache_prefix: str = Field(default="rag_cache", description="Key prefix for cache entries")
    index_name: str = Field(default="rag_knowledge", description="Vector search index name")

    # Performance
    batch_size: int = Field(default=10, ge=1, description="Documents per batch")
    max_concurrent_ai_requests: int = Field(
        default=5, ge=1, description="Maximum in-flight collaborator calls per batch"
    )
    document_split_size: int = Field(
        default=7000, ge=1000, description="Estimated token threshold above which to split"
    )
    token_ratio: float = Field(
        default=1.5, gt=0, description="Estimated tokens per character of content"
    )
    inter_batch_delay: float = Field(
        default=0.1, ge=0, description="Pause between batches (seconds)"
    )
    cache_check_delay: float = Field(
        default=0.05, ge=0, description="Pause between cache-check batches (seconds)"
    )

    # Pipeline
    fail_fast: bool = Field(default=True, description="Abort the pipeline on a stage failure")
    enable_incremental: bool = Field(
        default=True, description="Skip unchanged documents using the cache"
    )

    @field_validator("folder_tokens", "document_categories", mode="before")
    @classmethod
    def split_comma_separated(cls, value):
        """Accept comma-separated strings from the environment."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()


def validate_settings(
    config: Settings, stages: Optional[Iterable[str]] = None
) -> List[str]:
    """Return the configuration problems for the collaborators the given stages need."""
    selected = set(stages) if stages is not None else set(STAGE_NAMES)
    problems: List[str] = []

    if "clone" in selected:
        if not config.source_app_id:
            problems.append("SOURCE_APP_ID is required for the clone stage")
        if not config.source_app_secret or not config.source_app_secret.get_secret_value():
            problems.append("SOURCE_APP_SECRET is required for the clone stage")
        if not config.source_base_url.startswith("http"):
            problems.append("SOURCE_BASE_URL must be an http(s) URL")

    if selected & {"clean", "upload"} and not config.openai_api_key:
        problems.append("OPENAI_API_KEY is required for the clean and upload stages")

    if config.openai_base_url and not config.openai_base_url.startswith("http"):
        problems.append("OPENAI_BASE_URL must be an http(s) URL")

    redis_url = config.redis_url.get_secret_value()
    if not redis_url.startswith(("redis://", "rediss://", "unix://")):
        problems.append("REDIS_URL must start with redis://, rediss:// or unix://")

    if config.default_category not in config.document_categories:
        problems.append("DEFAULT_CATEGORY must be one of DOCUMENT_CATEGORIES")

    return problems


def ensure_valid_settings(config: Settings, stages: Optional[Iterable[str]] = None) -> None:
    """Raise ConfigurationError listing every problem found."""
    problems = validate_settings(config, stages)
    if problems:
        raise ConfigurationError(
            "Invalid configuration:\n" + "\n".join(f"  - {p}" for p in problems)
        )


settings = Settings()
