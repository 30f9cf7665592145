from pathlib import Path
from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

import os

# Load .env for local runs without overriding values already in the environment
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_file = BASE_DIR / ".env"

if env_file.exists():
    file_env = dotenv_values(env_file)
    missing_keys = {k: v for k, v in file_env.items() if k not in os.environ and v is not None}
    for k, v in missing_keys.items():
        os.environ[k] = v


class Settings(BaseSettings):
    """Runtime settings pulled from ``VOCC_`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VOCC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Logging format (plain or json)")

    # Trajectory Workers
    n_jobs: int = Field(default=1, description="Worker processes for trajectory integration")
    batch_size: int = Field(default=2048, ge=1, description="Seeds per worker task")

    # Classification
    sink_offset: float = Field(
        default=0.1,
        gt=0.0,
        lt=0.5,
        description="Fraction of a cell used to locate internal sink blocks",
    )


# Instantiate singleton settings object
settings = Settings()
