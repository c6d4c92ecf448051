"""Application lifecycle hooks for the pool and the orchestrator."""

import structlog

from .orchestrator import DeploymentOrchestrator
from .ssh_pool import ConnectionPool

logger = structlog.get_logger()


class LifecycleHandle:
    """Plain references to the pool and orchestrator for the host application.

    The application decides when to call these (for example after some time in
    the background); the handle only performs the teardown.
    """

    def __init__(self, pool: ConnectionPool, orchestrator: DeploymentOrchestrator):
        self.pool = pool
        self.orchestrator = orchestrator

    async def start(self) -> None:
        await self.pool.start_health_monitor()

    async def disconnect_all(self) -> None:
        """Cancel outstanding deployments and close every session.

        The pool stays usable; the next acquire reconnects.
        """
        cancelled = self.orchestrator.cancel_all()
        await self.pool.invalidate_all()
        logger.info("Disconnected all sessions", cancelled_tasks=cancelled)

    async def shutdown(self) -> None:
        """Cancel outstanding deployments and close the pool for good."""
        cancelled = self.orchestrator.cancel_all()
        await self.pool.close_all()
        logger.info("Shutdown complete", cancelled_tasks=cancelled)
