"""
Health check endpoints for readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (only when it backs the idempotency store)
"""
import asyncio
from typing import Any, Dict

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

from config import get_settings
from database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Overall system health status
    """

    def __init__(self, timeout_seconds: float = 3.0) -> None:
        """Initialize health check service."""
        self.settings = get_settings()
        self.timeout_seconds = timeout_seconds

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await asyncio.wait_for(
                    db.execute(text("SELECT 1")), timeout=self.timeout_seconds
                )
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Returns:
            Dict[str, Any]: Redis health status

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self.timeout_seconds,
            )
            await redis_client.ping()

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        finally:
            if redis_client:
                await redis_client.aclose()

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        if self.settings.idempotency_backend == "redis":
            try:
                checks["redis"] = await self.check_redis()
            except HealthCheckError as e:
                checks["redis"] = {
                    "status": "unhealthy",
                    "service": "redis",
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe endpoint: all dependencies must be available."""
        return await self.check_all()
