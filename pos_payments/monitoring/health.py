"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Pesapal API reachability (token request)
"""
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict

import structlog

if TYPE_CHECKING:
    from pos_payments.database.repository import PaymentRepository
    from pos_payments.integrations.pesapal_client import PesapalClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Gateway reachability check
    - Overall system health status
    """

    def __init__(self, repository: "PaymentRepository", gateway: "PesapalClient") -> None:
        self.repository = repository
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            await self.repository.ping()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check that the gateway accepts our credentials.

        Raises:
            HealthCheckError: If the gateway check fails
        """
        try:
            await self.gateway.ping()
        except Exception as e:
            logger.error("gateway_health_check_failed", error=str(e))
            raise HealthCheckError(f"Gateway health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "pesapal",
            "message": "Gateway connection successful",
            "circuit_breaker": self.gateway.circuit_breaker.state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        probes: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "pesapal": self.check_gateway,
        }
        checks = {}
        all_healthy = True

        for name, probe in probes.items():
            try:
                checks[name] = await probe()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be reachable."""
        return await self.check_all()
