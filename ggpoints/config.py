from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GGPOINTS_", env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./ggpoints.db"
    # JSON file of accounts and rewards loaded into the stores at startup.
    seed_file: Optional[str] = None
    # Extra balance CAS attempts after the first one loses a race.
    max_balance_retries: int = Field(default=1, ge=0)
    strict_cas: bool = True
    legacy_schema: bool = False
    ledger_async: bool = True
    ledger_workers: int = Field(default=2, ge=1)
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()
