"""Connection pool data models."""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import SessionState


class SessionMetrics(BaseModel):
    """Cumulative connect and command metrics for one host."""

    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    average_latency: float = 0.0  # seconds, mean of successful attempts
    last_error: str | None = None

    @property
    def success_rate(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.successful_attempts / self.total_attempts

    def record_success(self, latency: float) -> None:
        self.total_attempts += 1
        self.successful_attempts += 1
        self.average_latency += (latency - self.average_latency) / self.successful_attempts

    def record_failure(self, error: BaseException | str) -> None:
        self.total_attempts += 1
        self.failed_attempts += 1
        self.last_error = str(error)


class PoolStats(BaseModel):
    """Point-in-time snapshot of pool occupancy."""

    total_connections: int = 0
    healthy_connections: int = 0
    in_use_connections: int = 0
    idle_connections: int = 0
    waiting_requests: int = 0
    average_use_count: float = 0.0
    max_pool_size: int

    @property
    def utilization_rate(self) -> float:
        if self.max_pool_size <= 0:
            return 0.0
        return self.in_use_connections / self.max_pool_size

    @property
    def health_rate(self) -> float:
        if self.total_connections == 0:
            return 0.0
        return self.healthy_connections / self.total_connections


class ConnectionStatus(BaseModel):
    """Per-host view of a pooled session."""

    host_id: str
    state: SessionState
    healthy: bool
    in_use: bool
    created_at: datetime
    last_activity: datetime
    use_count: int = 0
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)
