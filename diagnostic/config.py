from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

PACKAGE_DIR = Path(__file__).parent

NEUTRAL_POLICIES = ("exclude", "count")


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("DIAGNOSTIC_DB_PATH", "") or PACKAGE_DIR / "data" / "diagnostic.db"
        ).expanduser()
    )
    database_url_override: str = Field(default_factory=lambda: os.getenv("DIAGNOSTIC_DATABASE_URL", "").strip())

    neutral_policy: str = Field(default_factory=lambda: os.getenv("DIAGNOSTIC_NEUTRAL_POLICY", "exclude").strip().lower())
    admin_user_ids: set[str] = Field(default_factory=lambda: {u.lower() for u in _env_list("DIAGNOSTIC_ADMIN_USER_IDS")})

    store_retries: int = Field(default_factory=lambda: _env_int("DIAGNOSTIC_STORE_RETRIES", 3))
    store_backoff_seconds: float = Field(default_factory=lambda: _env_float("DIAGNOSTIC_STORE_BACKOFF_SECONDS", 0.2))

    mcp_user_id: str = Field(default_factory=lambda: os.getenv("DIAGNOSTIC_MCP_USER_ID", "").strip())

    @field_validator("neutral_policy")
    @classmethod
    def policy_must_be_known(cls, v: str) -> str:
        if v not in NEUTRAL_POLICIES:
            raise ValueError(f"neutral_policy must be one of {', '.join(NEUTRAL_POLICIES)}")
        return v

    @field_validator("store_retries")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        return max(1, v)

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return f"sqlite:///{self.database_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
