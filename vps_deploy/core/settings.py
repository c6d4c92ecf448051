"""Connection pool and deployment settings.

Provides the single configuration value object consumed by the pool and the
orchestrator, using Pydantic BaseSettings with environment variable support
for operational tuning.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

KEEPALIVE_COMMAND = "echo keepalive"


class PoolSettings(BaseSettings):
    """Pool, transport and execution tuning (env prefix ``VPS_DEPLOY_``)."""

    max_pool_size: int = Field(10, ge=1, description="Maximum live sessions across all hosts")

    health_check_interval: float = Field(
        60.0, gt=0, description="Seconds between health monitor passes"
    )
    idle_check_threshold: float = Field(
        30.0, ge=0, description="Idle seconds before a session is probed"
    )
    max_idle_time: float = Field(
        300.0, gt=0, description="Idle seconds before a session is closed"
    )

    acquire_timeout: float = Field(30.0, gt=0, description="Pool acquire timeout in seconds")
    connect_timeout: float = Field(5.0, gt=0, description="TCP/SSH connect timeout in seconds")
    auth_timeout: float = Field(10.0, gt=0, description="SSH authentication timeout in seconds")
    command_timeout: float = Field(30.0, gt=0, description="Per-command timeout in seconds")
    probe_timeout: float = Field(5.0, gt=0, description="Health probe timeout in seconds")
    keepalive_interval: int = Field(30, ge=0, description="Transport keepalive in seconds")

    reconnect_attempts: int = Field(3, ge=1, description="Connect attempts per acquire")
    reconnect_base_delay: float = Field(2.0, ge=0, description="First reconnect backoff delay")
    reconnect_multiplier: float = Field(2.0, ge=1, description="Backoff growth factor")
    reconnect_max_delay: float = Field(30.0, ge=0, description="Backoff delay ceiling")

    model_config = SettingsConfigDict(env_prefix="VPS_DEPLOY_", env_file=".env", extra="ignore")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based, the first retry is attempt 1)."""
        delay = self.reconnect_base_delay * self.reconnect_multiplier ** (attempt - 1)
        return min(delay, self.reconnect_max_delay)
