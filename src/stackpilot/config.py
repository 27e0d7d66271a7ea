"""
Settings for the deployment orchestrators, loaded from the environment.

Values come from STACKPILOT_* environment variables first, then from a .env
file, then from the defaults below.
"""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """
    Tunables shared by the plan executor, the product orchestrator and the CLI.
    """

    model_config = SettingsConfigDict(
        env_prefix="STACKPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Total attempts for a transient adapter failure: the first call plus one retry.
    retry_attempts: int = Field(default=2, ge=1)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0)
    continue_on_error: bool = False
    remove_volumes: bool = False
    log_level: str = Field(default="WARNING", description="Log level of the command line")
