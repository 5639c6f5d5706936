"""Settings via pydantic-settings with VI_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VI_", env_file=".env")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("vi", validation_alias="DB_USER")
    db_password: str = Field("vi_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("vi", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    use_database: bool = False  # in-memory stores when False
    log_level: str = "info"

    # Embeddings
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # Inference
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 1024
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Tools
    tool_default_balance: float = 100.0
    tool_blocklist: list[str] = Field(default_factory=list)
    policy_rules: dict[str, str] = Field(default_factory=dict)  # name -> CEL expression

    # Memory
    memory_retrieval_limit: int = 10
    memory_prune_threshold: float | None = None  # None = per-dimension floor
    decay_sweep_interval: int = 3600  # seconds

    # Grounding
    grounding_min_confidence: float = 0.7
    grounding_max_ungrounded_claims: int = 3
    canon_uncertainty_threshold: float = 0.7
    lore_mode_user_default: bool = False

    # Self-model
    regeneration_high_threshold: int = 3
    regeneration_medium_threshold: int = 5
    regeneration_window_seconds: int = 3600
    self_model_llm_refinement: bool = False

    # HTTP
    host: str = "0.0.0.0"
    port: int = 8000

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "Settings":
        if self.embedding_dimensions <= 0:
            raise ValueError("embedding_dimensions must be positive")
        if self.regeneration_high_threshold < 1 or self.regeneration_medium_threshold < 1:
            raise ValueError("regeneration thresholds must be >= 1")
        if self.regeneration_window_seconds <= 0:
            raise ValueError("regeneration_window_seconds must be positive")
        if not 0.0 <= self.grounding_min_confidence <= 1.0:
            raise ValueError("grounding_min_confidence must be within [0, 1]")
        if self.tool_default_balance < 0:
            raise ValueError("tool_default_balance must be >= 0")
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
