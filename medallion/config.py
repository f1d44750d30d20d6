"""
Runtime settings for the medallion pipeline.

Values come from MEDALLION_* and DB_* environment variables, optionally
after loading a .env file with python-dotenv.
"""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class PipelineSettings(BaseModel):
    """
    Attributes:
        lock_timeout: Seconds to wait for a per-key resolution lock
        storage_timeout: Seconds allowed for each storage read/write
        max_conflict_retries: Check-and-set conflicts retried per key
        max_attempts: Attempts run_with_retries makes before BatchFailed
        lease_timeout: Seconds a loader holds a claimed batch without checkpointing
        invalid_record_policy: What happens to records that fail normalization
        metrics_port: Port for the Prometheus endpoint (CLI only)
        db_schema: PostgreSQL schema holding the pipeline tables
    """

    lock_timeout: float = Field(30.0, gt=0)
    storage_timeout: float = Field(60.0, gt=0)
    max_conflict_retries: int = Field(3, ge=0)
    max_attempts: int = Field(3, ge=1)
    lease_timeout: float = Field(300.0, gt=0)
    invalid_record_policy: Literal["quarantine", "drop"] = "quarantine"
    metrics_port: int | None = None
    db_schema: str = "medallion"

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "PipelineSettings":
        """
        Build settings from the environment.

        Args:
            env_file: Optional .env file loaded first (existing variables win)
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)

        values: dict[str, str] = {}
        mapping = {
            "lock_timeout": "MEDALLION_LOCK_TIMEOUT",
            "storage_timeout": "MEDALLION_STORAGE_TIMEOUT",
            "max_conflict_retries": "MEDALLION_MAX_CONFLICT_RETRIES",
            "max_attempts": "MEDALLION_MAX_ATTEMPTS",
            "lease_timeout": "MEDALLION_LEASE_TIMEOUT",
            "invalid_record_policy": "MEDALLION_INVALID_RECORD_POLICY",
            "metrics_port": "METRICS_PORT",
            "db_schema": "DB_SCHEMA",
        }
        for field_name, env_var in mapping.items():
            value = os.getenv(env_var)
            if value not in (None, ""):
                values[field_name] = value
        return cls(**values)
