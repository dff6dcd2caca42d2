"""Configuration schema using Pydantic."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from cachekeep.compaction.transcript import DEFAULT_TRANSCRIPT_CHAR_LIMIT
from cachekeep.session.fingerprint import DEFAULT_VOLATILE_PATTERNS
from cachekeep.session.store import SESSION_IDLE_TTL, SESSION_MAX_ENTRIES


class SessionsConfig(BaseModel):
    """Prompt cache session tracking."""
    enabled: bool = True
    idle_ttl_seconds: float = SESSION_IDLE_TTL
    max_entries: int = Field(default=SESSION_MAX_ENTRIES, gt=0)
    force_store: bool = False  # Ask the upstream to store responses for every session
    volatile_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_VOLATILE_PATTERNS))


class CompactionConfig(BaseModel):
    """Conversation compaction."""
    enabled: bool = True
    auto_limit_tokens: int | None = None  # None disables automatic compaction
    auto_min_messages: int = 8
    transcript_char_limit: int = DEFAULT_TRANSCRIPT_CHAR_LIMIT


class LoggingConfig(BaseModel):
    """Log output."""
    level: str = "INFO"
    debug: bool = False


class Config(BaseSettings):
    """Root configuration for cachekeep."""
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def log_level(self) -> str:
        """Effective log level; debug mode wins over the configured level."""
        return "DEBUG" if self.logging.debug else self.logging.level.upper()

    class Config:
        env_prefix = "CACHEKEEP_"
        env_nested_delimiter = "__"
