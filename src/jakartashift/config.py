"""Engine settings, read from JAKARTASHIFT_* environment variables."""

from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_EXCLUDED_DIRS = ["target", "build", "out", "node_modules", ".gradle", ".idea", ".git", "bin"]


class EngineSettings(BaseSettings):
    """Configuration shared by analysis, execution and verification."""

    model_config = SettingsConfigDict(env_prefix="JAKARTASHIFT_", case_sensitive=False, extra="ignore")

    # Persistence
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".jakartashift")
    knowledge_base_path: Optional[Path] = None  # None: bundled table

    # Scanning and execution
    max_workers: int = Field(default=4, ge=1)
    excluded_dirs: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_DIRS))
    rewrite_command: List[str] = Field(default_factory=list)  # empty: built-in line rewriter

    # Planning
    high_risk_max_batch: int = Field(default=4, ge=1)
    high_density: float = Field(default=0.5, ge=0.0, le=1.0)

    # Verification
    verify_timeout_seconds: float = Field(default=120.0, gt=0)
    verify_memory_mb: int = Field(default=512, ge=16)
    java_executable: str = "java"
    verify_command: List[str] = Field(default_factory=list)  # empty: java -jar

    log_level: str = "WARNING"


def load_settings(**overrides) -> EngineSettings:
    """Environment-backed settings with explicit overrides applied on top."""
    return EngineSettings(**{k: v for k, v in overrides.items() if v is not None})
